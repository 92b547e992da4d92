"""auth/ -- Account security package for Scriptoria.

Credential vault (passwords.py), token ledger (tokens.py), login guard
(guard.py), account repository (store.py), and FastAPI dependencies.

Layer rule: auth/ imports from core/ and audit/ only.
It does NOT import from api/, catalog/, or documents/.
api/ imports from auth/, not the other way around.
"""
