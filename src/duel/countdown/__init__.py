"""Phase-scoped countdown and waiting timers."""

from duel.countdown.timers import Countdown, WaitingCounter, format_clock

__all__ = ["Countdown", "WaitingCounter", "format_clock"]
