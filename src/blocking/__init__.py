"""
Blocking strategies for PatientMatch.

Groups patient identities by hashed demographic keys so that only
identities sharing a key are scored against each other.
"""
