"""
Scheduling and consistency for sanctions.

- **identifier_generator.py**: Random 18-digit action ids probed against the store.
- **timer_registry.py**: One asyncio task per pending expiry.
- **consistency_engine.py**: Issue (persist, apply, compensate) and the shared
  conditional reversal path.
- **recovery.py**: Startup replay of active sanctions into the timer registry.
- **reconciliation.py**: Periodic sweep that reverses sanctions whose timer never fired.
"""
