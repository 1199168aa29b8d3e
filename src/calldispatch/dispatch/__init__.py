"""
Dispatch engine: scheduler, completion reconciler, retry and stall recovery.
"""
