"""Stage pipeline for windowed feed sentiment runs.

Stage 1: Orchestrator - creates the run with a fixed cutoff time
Stage 2: Fetcher - walks the feed back to the cutoff, persisting batches
Stage 3: Analyzer / Aggregator - scores posts and writes the run summary
Stage 4: Poster - publishes the summary (suppressed in dry-run)
"""
