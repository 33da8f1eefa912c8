"""
Error types for the device link
Only transport setup failures cross the discovery boundary; everything else
is reported as data (None, a suppressed event or one rejected waiter)
"""


class DeviceLinkError(Exception):
    """Base error for the device link"""


class TransportSetupFailure(DeviceLinkError):
    """The UDP socket used for discovery could not be created or bound"""


class WaiterTimeout(DeviceLinkError, TimeoutError):
    """A wait_for_next_uid() call reached its own deadline"""


class DeviceNotReady(DeviceLinkError):
    """No device endpoint is bound to the session"""


class ConfigError(DeviceLinkError, ValueError):
    """Configuration file is missing required values or holds invalid ones"""
