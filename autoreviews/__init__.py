"""
Review backend for cars and restaurants.

The package keeps each entity's rating aggregates consistent with its
append-only ratings collection and composes listing queries, on top of a
pluggable document store (Firestore, SQL or in-memory) and object storage.
"""
