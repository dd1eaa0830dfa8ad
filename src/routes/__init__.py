"""
API Routes Package
==================
Tracker endpoints, mounted by api.py under /api.

Modules:
  helpers  - row fetching, type coercion, query parsing, response shaping
  auth     - bearer token -> user id dependency
  wearable - /wearable upload, samples, statistics, upload sessions
  summary  - /summary indicators, batch processing, correlations
  calendar - /calendar month view and migraine-day markers
  risk     - /risk-prediction prompt, data bundle, LLM analysis
  profile  - /profile patient profile
  migraine - /migraine episode entries
"""
