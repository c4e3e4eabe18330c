class GameActionError(Exception):
    """A player-initiated action could not be carried out.

    status_code follows HTTP semantics so routers can pass it straight through:
    403 not allowed for this player, 409 precondition no longer holds on the
    local snapshot, 502 the channel write failed.
    """

    def __init__(self, message: str, status_code: int = 409):
        super().__init__(message)
        self.status_code = status_code


class GameNotFoundError(LookupError):
    pass
