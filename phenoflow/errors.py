"""Exception hierarchy for the phenoflow core."""


class PhenoflowError(Exception):
    """Base class for all phenoflow errors."""


class ConfigError(PhenoflowError, ValueError):
    """Configuration values are missing or inconsistent."""


class RasterError(PhenoflowError):
    """A single raster asset could not be decoded."""


class FormatError(RasterError):
    """Bytes are not a TIFF/BigTIFF we can read."""


class UnsupportedCompressionError(RasterError):
    def __init__(self, code):
        self.code = code
        super().__init__(f"Unsupported compression: {code}")


class DecompressionError(RasterError):
    """A tile payload failed to decompress."""


class MissingTransformError(RasterError):
    """Neither the catalog nor the COG header carries a geotransform."""


class HttpError(PhenoflowError):
    """Non-2xx response (or exhausted transport failure when code is 0)."""

    def __init__(self, code, url=None, reason=None):
        self.code = code
        self.url = url
        message = f"HTTP error {code}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AuthError(PhenoflowError):
    """Credentials for a source are missing or were rejected."""

    def __init__(self, source, reason):
        self.source = source
        super().__init__(f"{source} authentication failed: {reason}")


class CatalogError(PhenoflowError):
    """A catalog search returned something we cannot interpret."""


class SessionError(PhenoflowError):
    """Terminal condition for a whole fetch session."""


class NoSourcesError(SessionError):
    def __init__(self):
        super().__init__("No reachable data sources")


class NoScenesError(SessionError):
    def __init__(self):
        super().__init__("No scenes found for date range")
