"""
Error types for the Card Scanning Engine

Per-frame problems are absorbed by the component that hits them and turned
into an empty result. These exceptions mark the failures that callers have to
see: unreadable input handed to a public decode call, and a catalog that
cannot be loaded at all.
"""


class CardScanError(Exception):
    """Base class for scanning engine errors"""


class ImageLoadError(CardScanError):
    """Image source is missing, corrupt, or in an unsupported format"""


class CatalogLoadError(CardScanError):
    """Catalog could not be read; scanning cannot start without it"""


class EmbeddingValidationError(CardScanError):
    """Catalog record carries an embedding that cannot be used"""


class ModelLoadError(CardScanError):
    """Configured embedding model could not be built; embeddings cannot be computed"""
