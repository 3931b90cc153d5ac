"""
Partner Sync - webhook ingestion, work queue and sync-job scheduler
"""
