"""Presence factor dispatch.

Each presence mode has at most one registered evaluator implementing
IFactorEvaluator. The set of modes is closed (PresenceMode); the evaluators
behind them are swappable. PolicyEvaluator resolves evaluators through this
registry instead of branching on the mode.
"""

from collections.abc import Callable, Iterable

from presence_admission.core.interfaces import IFactorEvaluator
from presence_admission.core.schemas import PresenceMode, SubmissionContext

_EVIDENCE_PROBES: dict[PresenceMode, Callable[[SubmissionContext], bool]] = {
    PresenceMode.GEOFENCE: lambda ctx: ctx.location is not None,
    PresenceMode.NETWORK: lambda ctx: ctx.network is not None,
    PresenceMode.BEACON: lambda ctx: ctx.beacon is not None,
    PresenceMode.NFC: lambda ctx: ctx.nfc is not None,
    PresenceMode.QR: lambda ctx: ctx.qr is not None,
    PresenceMode.FACE: lambda ctx: ctx.face is not None,
}


def has_evidence(mode: PresenceMode, context: SubmissionContext) -> bool:
    """Whether the submission carries evidence for a presence mode."""
    return _EVIDENCE_PROBES[mode](context)


class FactorEvaluatorRegistry:
    """Mode → evaluator table.

    Args:
        evaluators: Initial evaluators; each is registered under its own mode.
    """

    def __init__(self, evaluators: Iterable[IFactorEvaluator] = ()) -> None:
        self._evaluators: dict[PresenceMode, IFactorEvaluator] = {}
        for evaluator in evaluators:
            self.register(evaluator)

    def register(self, evaluator: IFactorEvaluator) -> None:
        """Register (or replace) the evaluator for evaluator.mode."""
        self._evaluators[PresenceMode(evaluator.mode)] = evaluator

    def get(self, mode: PresenceMode) -> IFactorEvaluator | None:
        return self._evaluators.get(mode)

    def modes(self) -> list[PresenceMode]:
        return list(self._evaluators)

    def __contains__(self, mode: object) -> bool:
        return mode in self._evaluators
