"""Context-augmented chat memory backed by a Milvus vector index."""

__version__ = "0.1.0"
