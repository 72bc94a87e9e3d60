# confirmations/exceptions.py


class ActionError(Exception):
    """A request the dispatcher rejects with a client error and a JSON message."""

    def __init__(self, message: str, status: int = 400, **extra):
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}
