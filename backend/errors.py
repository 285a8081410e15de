"""Domain errors raised by the battle engine and record services.

Every error maps to one HTTP status and a stable ``code`` that the API
returns as ``{"error": code, "detail": message}``.
"""


class BattleError(Exception):
    status_code = 500
    code = "BattleError"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_payload(self):
        return {"error": self.code, "detail": self.detail}


class NotFound(BattleError):
    status_code = 404
    code = "NotFound"


class InvalidState(BattleError):
    status_code = 400
    code = "InvalidState"


class RoomFull(BattleError):
    status_code = 400
    code = "RoomFull"


class Forbidden(BattleError):
    status_code = 403
    code = "Forbidden"


class DuplicateAnswer(BattleError):
    status_code = 400
    code = "DuplicateAnswer"


class InvalidIndex(BattleError):
    status_code = 400
    code = "InvalidIndex"


class RoomIdTaken(BattleError):
    # raised by registries on a code collision; create() retries before surfacing it
    status_code = 409
    code = "RoomIdTaken"
