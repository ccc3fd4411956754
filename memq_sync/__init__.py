"""
Sync daemon for Claude Code JSONL session logs.

This package mirrors ~/.claude/projects/ into a local SQLite database:
- JSONL file watching with a stability window over a watchdog observer
- Line-by-line parsing into normalized messages that never aborts a file
- A write coordinator serializing every database mutation
"""
