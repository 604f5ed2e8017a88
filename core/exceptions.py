"""
Custom exception classes

All session-level failures live here so the broadcaster can turn any of
them into a unicast error_message for the issuing connection.
"""


class TabletopException(Exception):
    """Base class for every session error reported back to a client"""
    pass


# ============ Validation ============

class ValidationFailed(TabletopException):
    """Malformed input: command syntax, payload fields, missing preconditions"""
    pass


class InvalidExpression(ValidationFailed):
    """
    Dice expression could not be evaluated

    reason is "syntax" for malformed notation and "bounds" for a
    well-formed expression whose numbers are out of range.
    """
    SYNTAX = "syntax"
    BOUNDS = "bounds"

    def __init__(self, message, reason=SYNTAX):
        self.reason = reason
        super().__init__(message)


# ============ Authorization ============

class NotAuthorized(TabletopException):
    """Caller lacks the role or ownership required for the action"""
    pass


class LobbyLocked(NotAuthorized):
    """Non-GM action attempted while the lobby is locked until campaign start"""
    def __init__(self):
        super().__init__("The lobby is locked until the GM starts the campaign.")


# ============ Lookup ============

class NotFound(TabletopException):
    """Referenced user, campaign, scene, choice or quest does not exist"""
    pass


class LobbyNotFound(NotFound):
    def __init__(self, name):
        self.name = name
        super().__init__(f"Lobby {name} not found")


# ============ Membership ============

class JoinRejected(TabletopException):
    """Join refused: reason is BANNED or WRONG_PASSWORD"""
    BANNED = "banned"
    WRONG_PASSWORD = "wrong_password"

    _MESSAGES = {
        BANNED: "You are banned from this lobby.",
        WRONG_PASSWORD: "Lobby is locked (wrong password).",
    }

    def __init__(self, reason):
        self.reason = reason
        super().__init__(self._MESSAGES.get(reason, "Join rejected."))


# ============ State transitions ============

class InvalidStateTransition(TabletopException):
    """Illegal transition, e.g. starting a campaign twice"""
    pass


# ============ Infrastructure ============

class RateExceeded(TabletopException):
    """Too many events from one connection inside the window"""
    def __init__(self, retry_after):
        self.retry_after = retry_after
        super().__init__(f"Slow down, try again in {retry_after:.1f}s.")


class PersistenceFailure(TabletopException):
    """Mirror write failed; logged server-side only"""
    pass
