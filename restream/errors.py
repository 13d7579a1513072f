"""
Error types raised by the restream core.

Hierarchy:
    RestreamError (base)
    ├── NotFound             - video/platform/schedule/session/file absent
    ├── AlreadyActive        - (video, platform) pair is already streaming
    ├── InvalidInput         - malformed schedule, loop or platform data
    ├── ProcessSpawnFailure  - ffmpeg could not be launched
    ├── ProcessCrashed       - ffmpeg vanished (detected by health check)
    ├── ProcessExitedNonZero - ffmpeg exited with a non-zero code
    └── PersistenceFailure   - the store is unavailable

Every error carries a stable ``kind`` string which the HTTP layer returns to
clients and uses to choose a status code.
"""


class RestreamError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message or self.kind, "kind": self.kind}


class NotFound(RestreamError):
    kind = "not_found"
    http_status = 404


class AlreadyActive(RestreamError):
    """Reported per destination; never aborts sibling destinations."""

    kind = "already_active"
    http_status = 409


class InvalidInput(RestreamError):
    kind = "invalid_input"
    http_status = 400


class ProcessSpawnFailure(RestreamError):
    kind = "spawn_failed"
    http_status = 502


class ProcessCrashed(RestreamError):
    kind = "crashed"
    http_status = 502


class ProcessExitedNonZero(RestreamError):
    kind = "exited_non_zero"
    http_status = 502

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Exit code: {exit_code}")
        self.exit_code = exit_code


class PersistenceFailure(RestreamError):
    kind = "persistence_failed"
    http_status = 500
