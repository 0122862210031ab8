# app/x402/__init__.py
"""
x402 Payment Gate.

This package puts pay-per-request access control in front of a backend API
using the x402 payment protocol. A facilitator verifies and settles the
payments; the gate only decides when to ask it.

Key components:
- codec: base64/JSON wire format of payment payloads and requirements
- facilitator: async client for the facilitator's verify and settle calls
- middleware: the per-request gate (402 challenge, verify, forward, settle)
- handoff: swaps the payment header for the backend credential
- audit: JSON-lines audit log of payment events

Configuration is loaded via app.core.config.load_gate_config.
"""

__version__ = "0.1.0"
