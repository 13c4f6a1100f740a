"""Multi-provider completion gateway.

Provides one request/response contract over several completion backends with:
  - Canonical message model (provider-independent DTOs)
  - Provider Adapters (Mistral, Cerebras, OpenRouter wire formats)
  - Rate Limit Tracker (error bursts, quota headers, cooldown recovery)
  - Failover Orchestrator (model rotation, then provider failover)
"""
