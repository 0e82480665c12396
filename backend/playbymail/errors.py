"""Error kinds raised by the turn-sheet engine.

``transient`` decides whether the job system retries; ``http_status`` is
what the API layer answers with.
"""


class PlayByMailError(Exception):
    transient = False
    http_status = 400

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self):
        return {'error': self.kind, 'message': str(self)}


class InvalidCodeFormat(PlayByMailError):
    pass


class CodeTypeMismatch(PlayByMailError):
    pass


class NotFound(PlayByMailError):
    http_status = 404


class SheetNotFound(NotFound):
    pass


class InstanceNotFound(NotFound):
    pass


class SubscriptionNotFound(NotFound):
    pass


class ObjectNotFound(NotFound):
    pass


class IllegalTransition(PlayByMailError):
    http_status = 409


class InstanceFull(IllegalTransition):
    pass


class ConflictOnSheetKey(PlayByMailError):
    http_status = 409


class InvalidJoinToken(PlayByMailError):
    http_status = 403


class InvalidSheetData(PlayByMailError):
    http_status = 422


class InvalidScanResult(PlayByMailError):
    http_status = 422


class TemplateNotFound(PlayByMailError):
    http_status = 500


class TemplateExecutionError(PlayByMailError):
    http_status = 500


class ExtractionFailed(PlayByMailError):
    http_status = 502

    def __init__(self, message, transient=True):
        super().__init__(message)
        self.transient = transient


class RendererUnavailable(PlayByMailError):
    http_status = 503


class RenderFailed(PlayByMailError):
    http_status = 500

    def __init__(self, message, transient=False):
        super().__init__(message)
        self.transient = transient


class WrongTurn(PlayByMailError):
    http_status = 409


class InstanceBusy(PlayByMailError):
    transient = True
    http_status = 409


class TransientFailure(PlayByMailError):
    transient = True
    http_status = 503


class PermanentFailure(PlayByMailError):
    http_status = 502


class PartialFailure(PlayByMailError):
    """Turn committed, but some sheets could not be applied."""
    http_status = 207

    def __init__(self, result):
        failed = ', '.join(f"{sid}: {reason}" for sid, reason in result.failed.items())
        super().__init__(f"{len(result.failed)} sheet(s) failed: {failed}")
        self.result = result
