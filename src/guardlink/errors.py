"""Typed failures raised by the command core.

Components raise these; only the dispatcher and the route layer decide what
they mean to a caller.
"""


class GuardlinkError(Exception):
    """Base class for all guardlink errors."""


class StorageUnavailable(GuardlinkError):
    """The backing store rejected a read or write."""


class CommandNotFound(GuardlinkError):
    def __init__(self, command_id: int) -> None:
        super().__init__(f"Command {command_id} not found")
        self.command_id = command_id


class CommandDeviceMismatch(GuardlinkError):
    """A device answered for a command addressed to a different device."""

    def __init__(self, command_id: int, device_id: str) -> None:
        super().__init__(f"Command {command_id} was not issued to device {device_id}")
        self.command_id = command_id
        self.device_id = device_id


class AlreadyResolved(GuardlinkError):
    """The command already left the issued state. Callers treat this as success."""

    def __init__(self, command_id: int, status: str) -> None:
        super().__init__(f"Command {command_id} already {status}")
        self.command_id = command_id
        self.status = status


class DeviceNotFound(GuardlinkError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class InvalidTransition(GuardlinkError):
    def __init__(self, device_id: str, action: str, reason: str) -> None:
        super().__init__(f"Cannot {action} device {device_id}: {reason}")
        self.device_id = device_id
        self.action = action
        self.reason = reason


class CommandDeclined(GuardlinkError):
    """A text command was unparseable, low-confidence or had no usable target."""


class InterpreterError(GuardlinkError):
    """The command interpreter backend failed."""
