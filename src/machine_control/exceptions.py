"""Error types raised by the control core"""


class MachineControlError(Exception):
    """Base class for control core errors"""


class ValidationError(MachineControlError):
    """A command was refused by the admission checks"""

    def __init__(self, reason: str, machine_id: str = None, command: str = None):
        super().__init__(reason)
        self.reason = reason
        self.machine_id = machine_id
        self.command = command


class TransportParseError(MachineControlError):
    """An inbound transport message has an unknown topic shape or a malformed body"""

    def __init__(self, message: str, topic: str = None):
        super().__init__(message)
        self.topic = topic
