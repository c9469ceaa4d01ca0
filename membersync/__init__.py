"""membersync — keeps the memberships table in step with Stripe subscriptions.

Stripe webhooks are verified, classified, resolved against canonical Stripe
state and written to the store as one row per member email.
"""

__version__ = "0.1.0"
