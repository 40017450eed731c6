"""Queue-based scrape orchestration for professional licensing boards.

Components:
- Seed producer that walks static ZIP lists and enqueues work
- Consumer that rate-limits, renders, parses and persists each item
- Coordinator that scores pipeline health and re-seeds a draining queue
"""

__version__ = "0.1.0"
