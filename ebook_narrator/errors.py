"""Exception hierarchy shared by the synthesis, playback and export layers."""


class NarratorError(Exception):
    """Base class for every error this package raises on purpose."""


class DocumentError(NarratorError):
    """A document could not be read or contained no readable text."""


class SegmentationDefect(NarratorError):
    """A non-structural unit exceeded the length bound.

    Only ever logged; the unit is skipped at playback time.
    """

    def __init__(self, index: int, length: int, limit: int):
        self.index = index
        self.length = length
        self.limit = limit
        super().__init__(f"Unit {index + 1} is {length} chars (limit {limit})")


class SynthesisError(NarratorError):
    """Remote synthesis failed after all retries."""


class SynthesisTimeout(SynthesisError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Synthesis timed out after {timeout:g}s")


class SynthesisServiceError(SynthesisError):
    def __init__(self, status: int, message: str = ""):
        self.status = status
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"Synthesis service error {status}{detail}")


class SynthesisNetworkError(SynthesisError):
    pass


class PlaybackDeviceError(NarratorError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Playback device error: {code}")


class UserCancelled(NarratorError):
    """The batch job was cancelled; its buffers stay on the job for resumption."""

    def __init__(self, job=None, reason: str = "cancelled"):
        self.job = job
        self.reason = reason
        super().__init__(f"Export {reason}")


class NoAudioProduced(NarratorError):
    def __init__(self, failed_indices: list[int] | None = None):
        self.failed_indices = list(failed_indices or [])
        super().__init__("No audio produced: every unit failed to synthesize")
