"""
Twilio inbound SMS webhook
Hands customer replies to the response resolver and answers with TwiML
"""

import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional
from xml.sax.saxutils import escape

from fastapi import APIRouter, HTTPException, Request, Response

from slotfill.config import WaitlistConfig

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/twilio", tags=["twilio"])

SIGNATURE_HEADER = "X-Twilio-Signature"


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """
    Signature Twilio sends with a webhook
    https://www.twilio.com/docs/usage/webhooks/webhooks-security

    HMAC-SHA1 over the full URL followed by every POST parameter, sorted by
    name, as name+value; base64 encoded.
    """
    message = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_twilio_signature(
    auth_token: str, url: str, params: Mapping[str, str], signature: str
) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_twilio_signature(auth_token, url, params), signature)


def twiml_response(message: Optional[str]) -> Response:
    """TwiML reply; an empty Response tells Twilio to send nothing back"""
    if message:
        body = f"<Response><Message>{escape(message)}</Message></Response>"
    else:
        body = "<Response/>"
    return Response(
        content=f'<?xml version="1.0" encoding="UTF-8"?>{body}',
        media_type="application/xml",
    )


@router.post("/sms")
async def receive_sms(request: Request):
    """
    Handle one inbound SMS.

    Twilio posts the message as form fields; From is the sender's phone number
    and Body the text. The resolver's reply is returned as the SMS answer.
    """
    config: WaitlistConfig = request.app.state.config
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if config.twilio_auth_token:
        url = config.twilio_webhook_url or str(request.url)
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not verify_twilio_signature(config.twilio_auth_token, url, params, signature):
            logger.warning(f"Rejected inbound SMS with a bad signature for {url}")
            raise HTTPException(status_code=403, detail="Invalid signature")
    else:
        logger.warning("TWILIO_AUTH_TOKEN not configured, skipping signature check")

    sender = params.get("From")
    if not sender:
        raise HTTPException(status_code=400, detail="Missing From")

    result = await request.app.state.resolver.handle_inbound_message(
        sender, params.get("Body", "")
    )
    logger.info(
        f"Inbound SMS {params.get('MessageSid', '(no sid)')} resolved as {result.outcome.value}"
    )
    return twiml_response(result.reply)
