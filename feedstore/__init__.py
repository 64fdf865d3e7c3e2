"""Document store for social feeds with hybrid embedded/overflow comments."""

from feedstore.app import FeedStoreApp, build_app
from feedstore.shared.settings import FeedStoreSettings

__version__ = "0.1.0"

__all__ = ["FeedStoreApp", "FeedStoreSettings", "build_app", "__version__"]
