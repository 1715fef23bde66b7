class ChatError(Exception):
    """Base for failures reported back to the client as {ok: false, error}."""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidInput(ChatError):
    code = "invalid_input"


class NameTaken(ChatError):
    code = "name_taken"


class NotAuthenticated(ChatError):
    code = "not_authenticated"


class TargetOffline(ChatError):
    code = "target_offline"


class NotFound(ChatError):
    code = "not_found"


class PersistenceError(ChatError):
    code = "persistence_failed"
