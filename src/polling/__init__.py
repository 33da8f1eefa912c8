"""
Polling module for device UID readings
"""

from .models import UIDEvent
from .payload import DecodedPayload, PayloadKind, decode_payload
from .poller import DevicePoller, DEFAULT_PATH

__all__ = ['UIDEvent', 'DecodedPayload', 'PayloadKind', 'decode_payload', 'DevicePoller', 'DEFAULT_PATH']
