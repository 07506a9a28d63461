"""
Exceptions
Error taxonomy for trust management operations
"""

from typing import List, Optional


class TrustError(Exception):
    """Base error; carries the HTTP status the API surfaces it with"""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(TrustError):
    """Invalid declaration, raised before any mutation is issued"""

    status_code = 400


class NotFoundError(TrustError):
    """A specifically requested device does not exist"""

    status_code = 404


class GatewayError(TrustError):
    """The local proxy management API was unreachable or rejected a request"""

    status_code = 502


class RemoteDeviceError(GatewayError):
    """A remote device endpoint was unreachable or rejected a request"""


class TeardownError(GatewayError):
    """One or more device entries could not be removed from the proxy"""

    def __init__(self, message: str, devices: List[str], detail: Optional[str] = None):
        super().__init__(message, detail)
        self.devices = devices
