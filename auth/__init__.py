"""auth/ -- Identity reconciliation and credential delivery for AuthGate.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (config
only). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
