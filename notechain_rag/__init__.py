"""
On-device retrieval-augmented generation for personal notes and tasks.

Indexes decrypted notes and todos into a local vector store, retrieves
relevant context for what the user is writing, and turns it into
suggestions with a local language model. Nothing leaves the machine.
"""

__version__ = "0.1.0"
