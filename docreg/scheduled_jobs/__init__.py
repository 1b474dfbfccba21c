"""Scheduled job service package.

This package contains the scheduled-job runtime that:
- Persists job definitions, per-customer delivery records and an audit trail to a DB.
- Computes next run times for one-off and recurring schedules.
- Generates report artifacts, caches them and emails them to subscribed customers.
- Executes due jobs on a real timer loop.
- Exposes a small control surface via FastMCP tools.
"""
