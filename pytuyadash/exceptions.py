class PyTuyaDashException(Exception):
    """Base class for errors raised by pytuyadash."""


class LinkError(PyTuyaDashException):
    """The transport to a device failed (socket, protocol or device error)."""

    def __init__(self, message: str, code: str = None) -> None:
        super().__init__(message)
        self.code = code


class ConfigError(PyTuyaDashException):
    """The persisted device configuration could not be read or written."""


class InvalidConfig(ConfigError):
    """A single device entry is missing fields or conflicts with another."""


class BootError(PyTuyaDashException):
    """Loading the device store failed while booting the registry."""
