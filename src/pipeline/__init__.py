"""
Batch pipeline and command-line entry point for PatientMatch.
"""
