"""
Decoding of device /getData responses

Firmware has shipped several body formats, so each shape is decoded into an
explicit tagged result instead of parse-and-catch fallthrough:

    "No Card Scanned Yet"          -> EMPTY
    "04:be:f3:0e:bf:2a:81"         -> PLAIN_UID "04:BE:F3:0E:BF:2A:81"
    {"uid": "04:BE:F3:0E"}         -> JSON_UID  "04:BE:F3:0E"
    {"status": "idle"}             -> UNRECOGNIZED
    "CARD-7731"                    -> PLAIN_UID "CARD-7731"
"""

import enum
import json
import re
from dataclasses import dataclass
from typing import Optional

NO_CARD_SENTINEL = "no card scanned"

# Colon separated hex bytes, 4 bytes or more
UID_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){3,}$")


class PayloadKind(enum.Enum):
    PLAIN_UID = "plain_uid"
    JSON_UID = "json_uid"
    EMPTY = "empty"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class DecodedPayload:
    kind: PayloadKind
    uid: Optional[str] = None

    @property
    def has_uid(self) -> bool:
        return self.kind in (PayloadKind.PLAIN_UID, PayloadKind.JSON_UID)


def is_no_card(text: str) -> bool:
    return text.casefold().startswith(NO_CARD_SENTINEL)


def decode_json(text: str) -> DecodedPayload:
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        return DecodedPayload(PayloadKind.UNRECOGNIZED)

    if not isinstance(message, dict):
        return DecodedPayload(PayloadKind.UNRECOGNIZED)

    uid = message.get("uid")
    if isinstance(uid, str) and uid.strip():
        return DecodedPayload(PayloadKind.JSON_UID, uid.strip())
    return DecodedPayload(PayloadKind.UNRECOGNIZED)


def decode_plain(text: str) -> DecodedPayload:
    if UID_PATTERN.match(text):
        return DecodedPayload(PayloadKind.PLAIN_UID, text.upper())
    # Unknown token shapes are still delivered so firmware changes keep working
    return DecodedPayload(PayloadKind.PLAIN_UID, text)


def decode_payload(text: Optional[str]) -> DecodedPayload:
    """Classify a raw response body"""
    trimmed = (text or "").strip()

    if not trimmed or is_no_card(trimmed):
        return DecodedPayload(PayloadKind.EMPTY)

    if trimmed.startswith("{"):
        return decode_json(trimmed)

    return decode_plain(trimmed)
