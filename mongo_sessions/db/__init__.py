from .store import Document, DocumentStore, InMemoryDocumentStore, WriteResult

__all__ = ["Document", "DocumentStore", "InMemoryDocumentStore", "WriteResult"]
