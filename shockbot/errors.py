from __future__ import annotations


class ShockBotError(RuntimeError):
    pass


class InvalidTransition(ShockBotError):
    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Invalid transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class PersistenceFailure(ShockBotError):
    pass


class TransitionLogFailure(PersistenceFailure):
    pass


class InsufficientData(ShockBotError):
    pass


class AdvisoryFailure(ShockBotError):
    pass


class InvalidAdvisoryResponse(AdvisoryFailure):
    pass


class VenueError(ShockBotError):
    pass


class LearningWriteDenied(ShockBotError):
    pass
