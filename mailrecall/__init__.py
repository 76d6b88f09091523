"""
mailrecall

Answers natural-language questions about a user's email history.

Tiers:
- Database: list / count / unread / participant search, no LLM involved
- Semantic: vector search over embedded emails, answer synthesized by an LLM

Usage:
    from mailrecall.common import load_config
    from mailrecall.server import build_app
    app = build_app(load_config())
"""

__version__ = "0.1.0"
