"""Inline ``@[type:name]`` / ``@[type:name|alias]`` mentions."""

from .parser import MentionResolver, ParsedMention, parse_mentions, to_embedding_text

__all__ = ["MentionResolver", "ParsedMention", "parse_mentions", "to_embedding_text"]
