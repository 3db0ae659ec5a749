"""
Services layer - the aggregation pipeline for devfeed.

1. Deduplication (deduplication.py):
   - URL and title fingerprints, union-find grouping
   - Survivor chosen by source weight

2. Relevance (relevance.py):
   - Keyword scoring against a profile's focus
   - Technology tag extraction

3. Enrichment (enrichment.py):
   - Bounded-concurrency AI summarization through a provider
   - Upward-only relevance refinement

4. Cache and quota (cache.py):
   - TTL cache of aggregation results per (profile, ai mode)
   - Daily AI run quota and single-flight runs

5. Aggregator (aggregator.py):
   - Orchestrates fetch -> dedupe -> score -> enrich -> persist

6. Submission, sync and tracking (submission.py, sync.py, tracking.py):
   - Manual URL intake, batch catch-up enrichment, engagement events
"""
