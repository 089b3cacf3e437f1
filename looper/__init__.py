"""
Looper — Automated Fix-Attempt Orchestration

Schedules bounded-concurrency repair loops over validation failures,
each inside its own isolated worktree, and remembers what failed.
"""

__version__ = "0.4.0"
__codename__ = "LOOPER"
__tagline__ = "Fix it. Check it. Remember it."
