"""
SLOCast Recommendation System.

Components:
- schemas: conditions, statuses, request bodies
- recommender: playbook matching, scoring, deduplicated inserts
- actions: apply / dismiss / snooze, snooze expiry sweep
"""
