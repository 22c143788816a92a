"""
x402-style Payment Protocol Module.

This module implements an HTTP 402 challenge/response handshake that gates
premium tool calls behind a micropayment signed by the client's allowance
wallet.

Key components:
- models: PaymentRequirements / PaymentProof / PaymentReceipt wire models
- pricing: Fixed per-tool price table
- store: Single-use requirement tracking (memory or SQLite)
- verifier: Signature and on-ledger settlement checks
- gate: Requirement issuance and proof redemption
- middleware: FastAPI middleware applying the gate to POST /tools/*
- receipts: Append-only receipt ledger
- audit: Payment and settlement audit logging

Configuration is loaded from environment variables via gateway.core.config.
"""

__version__ = "0.1.0"
