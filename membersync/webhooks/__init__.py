"""Stripe webhook inbound path.

Each webhook is signature-verified on its raw bytes, classified, resolved
against canonical Stripe state and written to the memberships table.
"""
