"""Vector index layer for chat memory.

Wraps the Milvus collection that holds message embeddings: provisioning and
readiness polling, upserts, filtered similarity search and deletes.
"""
