"""
Error taxonomy for the enforcement agent.

    InvalidInput       — malformed PIN, empty required field, bad store key/value
    RemoteUnavailable  — transient network failure talking to the control plane
    DocumentMissing    — the remote device document does not exist
    PrivilegeDenied    — the host no longer grants a capability
    AlreadySubscribed  — a second live subscription for the same field
"""


class DeviceLockError(Exception):
    pass


class InvalidInput(DeviceLockError, ValueError):
    pass


class RemoteUnavailable(DeviceLockError):
    pass


class DocumentMissing(DeviceLockError):
    def __init__(self, device_id: str):
        super().__init__(f"device document {device_id} does not exist")
        self.device_id = device_id


class PrivilegeDenied(DeviceLockError):
    def __init__(self, capability: str, detail: str = ""):
        super().__init__(f"{capability} denied{': ' + detail if detail else ''}")
        self.capability = capability


class AlreadySubscribed(DeviceLockError):
    pass
