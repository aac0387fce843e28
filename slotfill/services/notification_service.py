"""
Notification service for waitlist offers and their outcomes.
Builds message text and delivers it over Telegram or Twilio SMS.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import httpx
from telegram import Bot
from telegram.error import TelegramError

from slotfill.config import WaitlistConfig, get_config
from slotfill.db_models import CustomerContact

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"

SLOT_GONE_MESSAGE = (
    "Sorry, this spot is no longer available - the offer has expired or was already taken.\n"
    "You're still on the waitlist and we'll message you about the next opening."
)


def format_slot_time(slot_start: datetime) -> str:
    """E.g. 'Tue 6/3 at 10:00'"""
    return f"{slot_start.strftime('%a')} {slot_start.month}/{slot_start.day} at {slot_start.strftime('%H:%M')}"


def format_offer_message(
    service_name: str,
    slot_start: datetime,
    discount_percent: int,
    expires_at: datetime,
    offer_id: uuid.UUID,
) -> str:
    """Offer sent to every candidate, with the offer id as a reference for support"""
    message = (
        "🎉 A spot just opened up!\n\n"
        f"{service_name}\n"
        f"📅 {format_slot_time(slot_start)}\n"
    )
    if discount_percent:
        message += f"💸 {discount_percent}% off for waitlist customers\n"
    message += (
        f"\nReply YES to claim it. This offer expires at {expires_at.strftime('%H:%M')} UTC "
        f"on {expires_at.month}/{expires_at.day}.\n"
        "⚡ First to reply gets the spot!\n\n"
        f"Ref: {offer_id}"
    )
    return message


def format_slot_filled_message(service_name: str, slot_start: datetime) -> str:
    """Sent to the other candidates once somebody wins the slot"""
    return (
        f"The {service_name} spot on {format_slot_time(slot_start)} has been filled.\n"
        "You're still on the waitlist and we'll message you about the next opening."
    )


def format_confirmation_message(
    service_name: str,
    slot_start: datetime,
    discount_percent: int,
    appointment_id: Optional[str] = None,
) -> str:
    """Reply to the winner"""
    message = f"✅ Confirmed! {service_name} on {format_slot_time(slot_start)}."
    if discount_percent:
        message += f"\nYour {discount_percent}% waitlist discount has been applied."
    if appointment_id:
        message += f"\nBooking reference: {appointment_id}"
    return message


def format_already_booked_message(service_name: str, slot_start: datetime) -> str:
    """Reply to a repeated acceptance from the winner"""
    return f"You already booked this spot: {service_name} on {format_slot_time(slot_start)}. See you then!"


class TwilioSmsClient:
    """Sends SMS through the Twilio REST API"""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_phone: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.from_phone = from_phone
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self._auth = (account_sid, auth_token)

    async def send_sms(self, to_phone: str, body: str) -> Optional[str]:
        """
        Send one SMS.

        Returns:
            Twilio message SID, or None if the message was rejected
        """
        url = f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await self.client.post(
                url,
                data={"To": to_phone, "From": self.from_phone, "Body": body},
                auth=self._auth,
            )
        except httpx.HTTPError as e:
            logger.error(f"SMS request to {to_phone} failed: {e}")
            return None

        if response.status_code >= 400:
            logger.error(
                f"Twilio rejected SMS to {to_phone}: {response.status_code} - {response.text[:200]}"
            )
            return None

        sid = response.json().get("sid")
        logger.info(f"SMS sent to {to_phone} (sid: {sid})")
        return sid

    async def close(self) -> None:
        await self.client.aclose()


class NotificationService:
    """
    Outbound notification gateway.

    Telegram is used when the contact has linked a chat, SMS otherwise.
    Delivery never raises: a failed recipient is logged and reported as False.
    """

    def __init__(
        self,
        bot: Optional[Bot] = None,
        sms_client: Optional[TwilioSmsClient] = None,
        admin_chat_id: Optional[int] = None,
    ):
        self.bot = bot
        self.sms_client = sms_client
        self.admin_chat_id = admin_chat_id

    @classmethod
    def from_config(
        cls, bot: Optional[Bot] = None, config: Optional[WaitlistConfig] = None
    ) -> "NotificationService":
        config = config or get_config()
        sms_client = None
        if config.sms_enabled:
            sms_client = TwilioSmsClient(
                config.twilio_account_sid,
                config.twilio_auth_token,
                config.twilio_from_phone,
            )
        return cls(bot=bot, sms_client=sms_client, admin_chat_id=config.admin_telegram_id)

    async def send(self, contact: Optional[CustomerContact], text: str) -> bool:
        """Deliver one message to a customer"""
        if contact is None:
            logger.warning("Skipping notification - no contact details on file")
            return False

        if contact.telegram_chat_id is not None and self.bot is not None:
            try:
                await self.bot.send_message(chat_id=contact.telegram_chat_id, text=text)
                logger.info(f"Sent Telegram message to customer {contact.customer_id}")
                return True
            except TelegramError as e:
                logger.error(
                    f"Failed to send Telegram message to customer {contact.customer_id}: {e}"
                )
                return False

        if contact.phone and self.sms_client is not None:
            sid = await self.sms_client.send_sms(contact.phone, text)
            return sid is not None

        logger.warning(
            f"Skipping notification for customer {contact.customer_id} - no usable channel"
        )
        return False

    async def send_many(
        self, messages: Iterable[Tuple[Optional[CustomerContact], str]]
    ) -> Tuple[int, int]:
        """
        Deliver messages concurrently.

        Returns:
            (sent, failed) counts
        """
        results: List[bool] = await asyncio.gather(
            *(self.send(contact, text) for contact, text in messages)
        )
        sent = sum(1 for delivered in results if delivered)
        return sent, len(results) - sent

    async def send_admin_alert(self, message: str) -> None:
        """Send health alert to admin if configured"""
        if self.admin_chat_id is None or self.bot is None:
            logger.warning(f"Health alert (no admin chat configured): {message}")
            return
        try:
            await self.bot.send_message(
                chat_id=self.admin_chat_id,
                text=f"⚠️ Health Alert\n\n{message}",
            )
            logger.info(f"Sent health alert to admin {self.admin_chat_id}")
        except TelegramError as e:
            logger.error(f"Failed to send health alert: {e}")

    async def close(self) -> None:
        if self.sms_client is not None:
            await self.sms_client.close()
