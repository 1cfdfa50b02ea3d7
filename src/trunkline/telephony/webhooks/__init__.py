"""
Webhook ingress.

Keep import side-effect free.
"""
