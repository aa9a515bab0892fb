"""auth/ -- Token issuance, rotation, revocation and lockout for SessionKeeper.

Layer rule: auth/ imports from core/ (config, errors, db, time helpers) and
third-party libraries only. It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""
