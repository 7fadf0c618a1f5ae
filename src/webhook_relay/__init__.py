"""Change-event webhook relay for the ``user_events`` table."""
