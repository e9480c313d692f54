"""RPC client with deadline-aware TCP/TLS transport, adaptive load balancing, circuit breaking, retry budgets and degradation."""

__version__ = "0.1.0"
__all__ = ["balancer", "client", "krpc", "model", "net"]