from __future__ import annotations

"""
Append-only audit trail for note access and mutation.

Keep this package import-light: errors.py depends on redaction.
"""
