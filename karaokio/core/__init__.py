"""
Karaokio core - job orchestration.

1. ORCHESTRATOR (orchestrator.py)
   - Registry of active runs, FIFO admission queue, bounded worker pool
   - Cache lookup, stage pipeline, cache population

2. PIPELINE (pipeline.py)
   - Deadline wrapper (abandon, don't block)
   - Progress sub-ranges and the thread-safe progress reporter
   - Ordered compose strategies

3. KEYED LOCK (keyed_lock.py)
   - Per-song / per-fingerprint serialization
"""
