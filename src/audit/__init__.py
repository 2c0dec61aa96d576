"""
Audit trail for PatientMatch.
"""
