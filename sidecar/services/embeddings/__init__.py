from sidecar.services.embeddings.base import EmbeddingBackend, EmbeddingProviderError
from sidecar.services.embeddings.sentence_transformer import SentenceTransformerBackend

__all__ = [
    "EmbeddingBackend",
    "EmbeddingProviderError",
    "SentenceTransformerBackend",
]
