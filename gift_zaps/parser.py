"""Zap receipt parsing.

Turns a kind 9735 receipt into a typed ParsedZap: the embedded kind 9734
request plus either a gift payload (zaps sent to the service identity) or a
plain zap for push delivery. Anything malformed is dropped with a log line.
"""
import json
import logging
import re

from .models import (
    GiftPayload,
    KIND_ZAP_REQUEST,
    ParsedZap,
    PlainZap,
    SUBSCRIPTION_TYPES,
    ZapReceipt,
    ZapRequest,
)

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_PUBKEY_RE = re.compile(r"^[a-fA-F0-9]{64}$")
_MONTHS_RE = re.compile(r"^[0-9]+$")
_ERROR_CONTEXT = 50


class ZapParseError(Exception):
    """Raised when a receipt or its embedded request cannot be parsed."""

    pass


def escape_control_characters(text: str) -> str:
    """Replace raw control characters with ``\\uXXXX`` escapes.

    Some zap providers embed request JSON with literal newlines inside
    strings, which strict JSON rejects.
    """
    return _CONTROL_CHARS.sub(lambda m: "\\u%04x" % ord(m.group(0)), text)


def _error_window(text: str, pos: int) -> str:
    return text[max(0, pos - _ERROR_CONTEXT):pos + _ERROR_CONTEXT]


def decode_description(description: str) -> dict:
    """Decode a receipt's description tag into the zap request dictionary.

    Tries strict JSON first; if that fails, retries exactly once after
    escaping control characters.

    Raises:
        ZapParseError: If neither attempt yields a JSON object
    """
    try:
        data = json.loads(description)
    except json.JSONDecodeError as first_error:
        try:
            data = json.loads(escape_control_characters(description))
        except json.JSONDecodeError as second_error:
            logger.error("Failed to parse zap request description: %s", first_error)
            logger.error("Also failed after escaping control characters: %s", second_error)
            logger.debug(
                "Description around error: %r",
                _error_window(description, first_error.pos),
            )
            raise ZapParseError("Unparseable zap request description") from second_error
        logger.info("Parsed zap request after escaping control characters")

    if not isinstance(data, dict):
        raise ZapParseError(f"Zap request description is not an object: {type(data).__name__}")
    return data


def parse_gift_content(content: str) -> GiftPayload | None:
    """Parse the newline-delimited gift fields from a zap request's content.

    Lines are trimmed and blank lines dropped. Line 0 is a banner, then
    recipient pubkey, subscription type, months, and an optional message.

    Returns:
        GiftPayload, or None if any field is invalid
    """
    lines = [line.strip() for line in content.split("\n")]
    lines = [line for line in lines if line]

    if len(lines) < 4:
        logger.warning("Gift zap content has insufficient lines: %d", len(lines))
        return None

    recipient, subscription_type, months_raw = lines[1], lines[2], lines[3]

    if not _PUBKEY_RE.match(recipient):
        logger.warning("Invalid recipient pubkey format: %r", recipient)
        return None

    if subscription_type not in SUBSCRIPTION_TYPES:
        logger.warning("Invalid subscription type: %r", subscription_type)
        return None

    if not _MONTHS_RE.match(months_raw):
        logger.warning("Invalid months value: %r", months_raw)
        return None
    months = int(months_raw)
    if not 1 <= months <= 12:
        logger.warning("Months out of range: %d", months)
        return None

    return GiftPayload(
        recipient_pubkey=recipient.lower(),
        subscription_type=subscription_type,
        months=months,
        message="\n".join(lines[4:]) if len(lines) > 4 else None,
    )


def _plain_zap_link(receipt: ZapReceipt, request: ZapRequest, recipient: str) -> str:
    # Zapped note first, then the sender's profile, then the recipient's own
    if request.event_ref:
        return f"nostr:{request.event_ref}"
    if receipt.sender_hint:
        return f"nostr:{receipt.sender_hint}"
    return f"nostr:{recipient}"


class ZapEventParser:
    """Parses zap receipts and routes them to the gift or plain-zap path.

    Args:
        service_pubkey: Identity that gift zaps are sent to (hex)
    """

    def __init__(self, service_pubkey: str):
        self.service_pubkey = service_pubkey.lower()

    def is_gift(self, receipt: ZapReceipt, request: ZapRequest) -> bool:
        """True if the zap was sent to the service identity."""
        recipients = {p.lower() for p in receipt.recipients + request.recipients}
        return self.service_pubkey in recipients

    def parse(self, receipt: ZapReceipt) -> ParsedZap | None:
        """Parse a receipt.

        Returns:
            ParsedZap with exactly one of ``gift``/``plain`` set, or None if
            the receipt should be dropped
        """
        try:
            return self._parse(receipt)
        except ZapParseError as e:
            logger.warning("Dropping zap receipt %s: %s", receipt.id[:16], e)
            return None

    def _parse(self, receipt: ZapReceipt) -> ParsedZap | None:
        if not receipt.bolt11 or not receipt.description:
            raise ZapParseError("missing bolt11 or description tag")

        data = decode_description(receipt.description)
        if not isinstance(data.get("tags", []), list):
            raise ZapParseError("zap request tags are not a list")
        request = ZapRequest.from_dict(data)
        if request.kind != KIND_ZAP_REQUEST:
            raise ZapParseError(f"expected kind {KIND_ZAP_REQUEST} zap request, got kind {request.kind}")

        if self.is_gift(receipt, request):
            gift = parse_gift_content(request.content)
            if gift is None:
                logger.warning("Failed to parse gift zap content: %r", request.content)
                return None
            if request.amount_millisats is None:
                raise ZapParseError("gift zap request has no usable amount tag")
            return ParsedZap(receipt=receipt, request=request, gift=gift)

        recipients = receipt.recipients or request.recipients
        if not recipients:
            raise ZapParseError("no recipient p tag")
        recipient = recipients[0]
        millisats = request.amount_millisats
        plain = PlainZap(
            event_id=receipt.id,
            recipient_pubkey=recipient,
            sender_pubkey=request.pubkey,
            amount_sats=millisats // 1000 if millisats is not None else 0,
            link=_plain_zap_link(receipt, request, recipient),
            from_fan=receipt.sender_hint is not None,
        )
        return ParsedZap(receipt=receipt, request=request, plain=plain)
