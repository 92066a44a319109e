"""PayPal IPN inventory listener.

Receives PayPal Instant Payment Notifications for completed sales.
Each notification is postback-verified, guarded, deduplicated, and turned
into one inventory adjustment per purchased line item.
"""
