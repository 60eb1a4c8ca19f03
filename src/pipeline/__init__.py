"""
Consensus Mask Pipeline

Asynchronous side of the aggregation engine:
1. Ingest - append run results as they arrive
2. Barrier - claim and compose once quorum is reached
3. Watchdog - force finalize jobs whose runs stopped arriving
"""
