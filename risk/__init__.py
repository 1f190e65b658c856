"""risk/ -- Login and password-change risk scoring for VaultPass.

Layer rule: risk/ imports core/, audit/, and sessions/ only.
auth/ calls into risk/, not the other way around.
"""
