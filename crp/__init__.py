"""Cloud Route Provider (CRP).

Discovers backends that carry routing labels and continuously publishes a
complete dynamic configuration for the reverse proxy:
 - routers parsed from a small label DSL
 - per-backend service-to-service identity tokens, cached and refreshed
 - deterministic ownership when several backends claim one route
 - a full snapshot every cycle, handed off with bounded backpressure
"""
