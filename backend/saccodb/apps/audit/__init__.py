"""
Audit app

Append-only audit trail for stage operations. Writes are best-effort and
never abort the operation being audited.
"""
