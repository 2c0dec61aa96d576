"""
Normalization modules for PatientMatch.

Standardizes patient demographics (names, dates of birth, phones, MRNs,
addresses) into the features used by blocking and field comparison.
"""
