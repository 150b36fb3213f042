from typing import Dict, List
from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    """A chunk of indexed or manually added text.

    Documents are immutable once stored; the store is the only owner.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique document identifier")
    content: str
    metadata: Dict[str, str] = Field(default_factory=dict, description="Source metadata, e.g. path and chunk index")
    embedding: List[float] = Field(default_factory=list)


class SearchResult(BaseModel):
    """A document and its cosine similarity to the query"""
    document: Document
    score: float
