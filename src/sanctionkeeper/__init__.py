"""
Sanctionkeeper - time-bounded moderation sanctions for Discord

Sanctionkeeper issues temporary mutes and timed role changes and makes sure
each one is reversed exactly once, across restarts, clock adjustments and
failed Discord calls.

Core Components:

- **Sanction Store**: SQLite table of every sanction ever issued; the
  ``active`` flag flip is the single point where concurrent reversals race
- **Timer Registry**: One in-process timer per expiring sanction
- **Consistency Engine**: Persist-first issuing with compensation, and the
  conditional reversal path shared by timers, sweeps and manual commands
- **Recovery / Sweep**: Rebuild timers at startup and periodically reverse
  anything whose timer was lost

Usage:
    from sanctionkeeper.main import main
    main()
"""
