"""
Order matching classifiers.

Uses Gemini directly, or the remote classifier service when
USE_REMOTE_CLASSIFIER is set.
"""

from order_sync.config import settings
from order_sync.classifiers.base import BaseClassifier
from order_sync.classifiers.gateway import ClassifierGateway


def get_classifier() -> BaseClassifier:
    """Get the configured matching backend."""
    if settings.use_remote_classifier:
        from order_sync.services.classifier_client import RemoteClassifierClient

        return RemoteClassifierClient()

    from order_sync.classifiers.gemini import GeminiClassifier

    return GeminiClassifier()


def get_gateway() -> ClassifierGateway:
    """Gateway around the configured backend."""
    return ClassifierGateway(get_classifier())


__all__ = [
    "BaseClassifier",
    "ClassifierGateway",
    "get_classifier",
    "get_gateway",
]
