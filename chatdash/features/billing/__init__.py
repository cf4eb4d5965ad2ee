"""
Billing: Stripe provider, webhook synchronization and checkout/portal orchestration.

Subscription state is written only by verified webhooks; entitlements are
derived from it, never from client input.
"""
