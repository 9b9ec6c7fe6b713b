"""
Delivery: outbound forwarding of relayed messages.

- base: Forwarder contract and delivery metrics
- http_forwarder: httpx-backed POST delivery with per-phase timeouts
"""
