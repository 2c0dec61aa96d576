"""
Storage modules for PatientMatch.

SQLite-backed stores for identities, match candidates, review decisions
and conflict records.
"""
