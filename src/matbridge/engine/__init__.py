"""Bundled array-language engine that runs inside a session's worker process."""
