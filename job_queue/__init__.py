"""
Dispatch Queue: decouples notification ingress from outbound delivery.

- Ingress ENQUEUES messages without ever waiting on delivery
- A fixed number of lanes DEQUEUE them and drive one attempt each
- In-memory asyncio.Queue; nothing survives a restart
"""
