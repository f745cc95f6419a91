"""ORM model exports."""

from .content import ContentEmbedding, ContentGroup, ContentRecord
from .jobs import GenerationJob

__all__ = ["ContentEmbedding", "ContentGroup", "ContentRecord", "GenerationJob"]
