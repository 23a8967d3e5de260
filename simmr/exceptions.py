"""Exceptions raised by simmr."""

from typing import Any, Optional


class InputError(ValueError):
    """Invalid dataset or configuration, detected before any sampling."""


class SamplingError(RuntimeError):
    """
    Numerical failure while sampling a single group.

    Parameters
    ----------
    message : str
        Human-readable description
    group : int, optional
        Group id the failure happened in
    parameter : str, optional
        Name of the offending parameter block
    value : Any, optional
        Offending value (e.g. the non-finite log-density)
    """

    def __init__(
        self,
        message: str,
        group: Optional[int] = None,
        parameter: Optional[str] = None,
        value: Any = None
    ):
        self.message = message
        self.group = group
        self.parameter = parameter
        self.value = value

        context = []
        if group is not None:
            context.append(f"group={group}")
        if parameter is not None:
            context.append(f"parameter={parameter}")
        if value is not None:
            context.append(f"value={value!r}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)

    def __reduce__(self):
        # Keep attributes when crossing a process boundary
        return (
            self.__class__,
            (self.message, self.group, self.parameter, self.value)
        )


class InitializationError(SamplingError):
    """Log-density is not finite at the initial state (bad priors or data)."""
