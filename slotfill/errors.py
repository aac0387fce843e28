"""
Exceptions raised by the engine
"""


class SlotfillError(Exception):
    """Base class for engine errors"""


class InvalidOfferRequest(SlotfillError):
    """Offer preconditions were not met (no candidates, discount or window out of bounds)"""
