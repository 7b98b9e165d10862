"""
Feeder Agent Services

1. Transport - Backend authentication, registry and test events, uploads
2. Config - Registry validation, live registry, change classification
3. Device - Modbus reads, per-device poll timers, connection tests
4. System - Heartbeat, local health server
"""
