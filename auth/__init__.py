"""auth/ -- Credentials, two-factor, tokens, and the account-security service.

Layer rule: auth/ may import core/, audit/, sessions/, and risk/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
