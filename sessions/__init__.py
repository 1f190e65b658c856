"""sessions/ -- Session and device registry for VaultPass.

Layer rule: sessions/ imports only core/ (plus stdlib and third-party).
It does NOT import from auth/, audit/, risk/, or api/.
"""
