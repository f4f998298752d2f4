class CombineError(Exception):
    """Base error for a combine job; ``stage`` names where it happened."""

    stage = "unknown"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(CombineError):
    stage = "validation"


class DownloadError(CombineError):
    stage = "downloading"


class ProbeError(CombineError):
    stage = "probing"


class GraphBuildError(CombineError):
    stage = "building"

    def __init__(self, message: str, graph_text: str = "", stage: str | None = None):
        super().__init__(message, stage)
        self.graph_text = graph_text


class EngineError(CombineError):
    stage = "rendering"

    def __init__(
        self,
        message: str,
        stderr_tail: str = "",
        returncode: int | None = None,
        stage: str | None = None,
    ):
        super().__init__(message, stage)
        self.stderr_tail = stderr_tail
        self.returncode = returncode


class JobCancelled(CombineError):
    stage = "rendering"
