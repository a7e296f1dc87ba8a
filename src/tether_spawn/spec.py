"""Launch specification and its builders.

Three construction conventions are accepted, each through its own builder,
and all of them produce the same canonical ``LaunchSpec``:

    LaunchSpec.from_handler("reports")
    LaunchSpec.from_positional("reports", "daily", 2024, True)
    LaunchSpec.from_positional("reports daily 2024", True)
    LaunchSpec.from_mapping({"handler": "reports", "args": "daily 2024", "immediate": True})

A missing handler is not rejected here. It is carried through and turns into
a ``LaunchFailure`` when the handle tries to run.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Union

from .errors import SpecError

__all__ = ["LaunchSpec", "Token"]

Token = Union[str, int, float]


def _split_args(value: Any) -> tuple[Token, ...]:
    """Normalize an argument value from the mapping form."""
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, Sequence):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class LaunchSpec:
    """Canonical description of what to launch and how.

    Attributes:
        handler: Name of the unit of work the host runs in the child
        args: Positional argument tokens, in order
        tethered: Kill the child when the supervising handle is released
        background: Detach from the launching shell (only with tethered=False)
        immediate: Launch as soon as the handle is constructed
    """

    handler: str
    args: tuple[Token, ...] = field(default_factory=tuple)
    tethered: bool = True
    background: bool = False
    immediate: bool = False

    def __post_init__(self) -> None:
        # Tethering needs a trackable kill target, so it wins over background.
        if self.tethered and self.background:
            object.__setattr__(self, "background", False)
        if not isinstance(self.args, tuple):
            object.__setattr__(self, "args", tuple(self.args))

    @classmethod
    def from_handler(cls, handler: str) -> "LaunchSpec":
        """Bare handler name with every option at its default."""
        return cls(handler=handler)

    @classmethod
    def from_positional(cls, first: str, *values: Token | bool) -> "LaunchSpec":
        """Handler followed by arguments, with an optional trailing bool.

        ``first`` may carry the arguments itself ("reports daily 2024").
        A trailing ``bool`` is consumed as ``immediate`` and never becomes an
        argument.
        """
        remaining = list(values)
        immediate = False
        if remaining and isinstance(remaining[-1], bool):
            immediate = remaining.pop()

        handler = first or ""
        args: list[Token] = []
        if isinstance(handler, str) and handler.split():
            handler, *args = handler.split()
        args.extend(remaining)

        return cls(handler=handler, args=tuple(args), immediate=immediate)

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "LaunchSpec":
        """Structured options map.

        Recognized keys: ``handler`` (or ``controller``), ``args`` (or
        ``controller_args``), ``tethered``, ``background``, ``immediate``.
        ``background`` is only honored when ``tethered`` is false.
        """
        handler = options.get("handler")
        if handler is None:
            handler = options.get("controller")

        args_key = "args" if "args" in options else "controller_args"
        tethered = bool(options.get("tethered", True))
        background = bool(options.get("background", False)) if not tethered else False

        return cls(
            handler=handler or "",
            args=_split_args(options.get(args_key)),
            tethered=tethered,
            background=background,
            immediate=bool(options.get("immediate", False)),
        )

    def with_options(self, **changes: Any) -> "LaunchSpec":
        """Copy of this spec with some fields replaced."""
        return replace(self, **changes)

    def validate(self) -> "LaunchSpec":
        """Raise SpecError if no handler is set.

        Builders never call this; launching surfaces the same problem as a
        LaunchFailure instead.
        """
        if not isinstance(self.handler, str) or not self.handler.strip():
            raise SpecError("Launch spec has no handler")
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "handler": self.handler,
            "args": list(self.args),
            "tethered": self.tethered,
            "background": self.background,
            "immediate": self.immediate,
        }
