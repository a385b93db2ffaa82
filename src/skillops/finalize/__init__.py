"""End-of-session finalization: gates, commit, push, review, merge."""
