"""audit/ -- Security event trail for VaultPass.

Layer rule: audit/ imports only core/ (plus stdlib and third-party).
It does NOT import from auth/, sessions/, risk/, or api/.
"""
