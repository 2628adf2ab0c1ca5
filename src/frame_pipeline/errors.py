"""Exception taxonomy for the frame extraction pipeline.

Processing errors are raised by the video processor and converted into a
FAILED job at the worker boundary. Store and transition errors are raised by
the persistence layer and the job model respectively.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ProcessingError(PipelineError):
    """A job could not be processed; recorded on the job as its error."""


class InputNotFound(ProcessingError):
    """The input reference did not resolve to a file."""


class ExtractionFailed(ProcessingError):
    """FFmpeg exited with a non-zero status."""

    def __init__(self, message: str, returncode: int = -1):
        super().__init__(message)
        self.returncode = returncode


class ExtractionTimeout(ExtractionFailed):
    """FFmpeg exceeded the wall-clock limit and was killed."""


class NoFramesExtracted(ProcessingError):
    """FFmpeg succeeded but produced no frame images."""


class PackagingFailed(ProcessingError):
    """Frames could not be written to the output archive."""


class JobCancelled(PipelineError):
    """The job was cancelled while its execution unit was running.

    Not a failure: the execution unit stops without touching the stored
    CANCELLED record.
    """


class StoreUnavailable(PipelineError):
    """The job store could not be reached or returned a backend error."""


class InvalidTransition(PipelineError):
    """A state change that the job lifecycle does not allow."""
