"""
filtersync package - Filter List Update and Patch Synchronization

Modules:
    models: Version records, update tasks, results and error kinds
    config: Update settings and service defaults
    storage: Key/value, version and content stores
    consent: Consent tracking for filters requiring extra disclosure
    header: Filter header (version metadata) parser
    patches: Incremental (diff) updates
    directives: !#if / !#include resolution
    downloader: Async fetching with retries
    catalog: Built-in catalog, custom subscriptions, installation state
    decision: Which filters to update, and how
    patcher: Per-filter update and commit
    orchestrator: Concurrent update cycles
    engine: Debounced rule engine rebuild signal
    scheduler: Periodic and on-demand cycles
    app: Composition root and CLI
"""

__version__ = "1.0.0"
