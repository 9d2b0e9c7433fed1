"""compass_sync – incremental sync of Compass school news and messages.

Polls the Compass mobile API, records every news item, message and
attachment it has ever seen, and composes notification payloads only
for entities that were not recorded before.

Run a pass with ``python -m compass_sync.run`` or call
``compass_sync.pipeline.poll_once()``.
"""
