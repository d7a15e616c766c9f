"""Exception types for the llamabox build pipeline."""


class LlamaboxError(Exception):
    """Base exception for pipeline errors."""

    pass


class NetworkError(LlamaboxError):
    """Request could not be sent or returned a non-success status."""

    pass


class MissingLengthError(LlamaboxError):
    """Server did not advertise a Content-Length."""

    pass


class TransferError(LlamaboxError):
    """Read failure while streaming a response body."""

    pass


class IoError(LlamaboxError):
    """Filesystem create/open/write/permission failure."""

    pass


class ParseError(LlamaboxError):
    """Malformed JSON document or unparseable reference."""

    pass


class AssetNotFoundError(LlamaboxError):
    """No release asset matches the requested prefix."""

    pass


class AlreadyExistsError(LlamaboxError):
    """Output path is already occupied."""

    pass


class NotFoundError(LlamaboxError):
    """Local model or executable path does not exist."""

    pass


class BuildError(LlamaboxError):
    """Alignment tool failure, archive construction failure or image build failure."""

    pass


class RunError(LlamaboxError):
    """Serving executable could not be launched or exited with an error."""

    pass
