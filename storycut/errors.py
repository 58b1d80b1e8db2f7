"""Exception taxonomy for parsing, voice resolution and playback."""


class StoryCutError(Exception):
    """Base class for all story playback errors."""


class ParseSkip(StoryCutError):
    """A script line could not be classified and was dropped."""

    def __init__(self, line_number: int, line: str, reason: str):
        self.line_number = line_number
        self.line = line
        self.reason = reason
        super().__init__(f"line {line_number}: {reason}: {line[:80]!r}")


class ResolutionUnavailable(StoryCutError):
    """The requested audio source for a voice line does not exist."""


class SynthesisFailure(StoryCutError):
    """Speech synthesis failed for a voice line."""


class MediaUnresolved(StoryCutError):
    """A media reference could not be resolved to a URL."""


class FatalConfiguration(StoryCutError):
    """No narrator or ember voice is configured, so no fallback exists."""
