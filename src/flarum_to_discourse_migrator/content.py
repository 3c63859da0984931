"""Conversion of Flarum's stored post XML into Discourse Markdown.

Flarum stores post bodies as s9e/TextFormatter XML: the rendered structure is
kept as tags (<QUOTE>, <IMG>, <URL>, <LI>, ...) and the original markup
characters survive inside <s>/<e> marker tags. Discourse wants Markdown.

The conversion is a fixed sequence of rewrite rules. Order matters: specific
tags must be handled before the generic tag strip removes their markers, and
entity decoding must come after all tag handling so that decoded text is never
mistaken for markup. Each rule is a pure regex substitution and can be applied
on its own.
"""

from __future__ import annotations

import html
import re
from collections.abc import Callable
from dataclasses import dataclass

UsernameResolver = Callable[[str], str | None]

# Optional s9e markup markers surrounding a tag's content, e.g. <I><s>*</s>text<e>*</e></I>
_START_MARKER = r"(?:<s>[^<]*</s>)?"
_END_MARKER = r"(?:<e>[^<]*</e>)?"


@dataclass(frozen=True)
class RewriteRule:
    """A named regex substitution."""

    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _quote_block(match: re.Match[str]) -> str:
    content = match.group(1).strip()
    cleaned = re.sub(r"</?p>", "", content, flags=re.IGNORECASE)
    cleaned = re.sub(r"</?[^>]+>", "", cleaned)
    # Quotes of quotes arrive with their markers already escaped; drop them
    cleaned = re.sub(r"^(?:&gt;|>)+\s*", "", cleaned, flags=re.MULTILINE)
    quoted = "\n".join(f"> {line.strip()}" for line in cleaned.splitlines())
    return f"\n\n{quoted}\n\n"


def _list_item(match: re.Match[str]) -> str:
    return f"- {match.group(1).strip()}"


def _mention_rule(resolve_username: UsernameResolver, fallback_username: str) -> RewriteRule:
    def replace(match: re.Match[str]) -> str:
        username = resolve_username(match.group(2))
        return f"@{username or fallback_username}"

    return RewriteRule(
        "mentions",
        re.compile(r'<(POSTMENTION|USERMENTION)[^>]*displayname="([^"]+)"[^>]*>.*?</\1>', re.IGNORECASE),
        replace,
    )


# Rules after mention resolution do not depend on any lookup and are shared.
QUOTE_RULE = RewriteRule("quotes", re.compile(r"<QUOTE>(.*?)</QUOTE>", re.IGNORECASE | re.DOTALL), _quote_block)

STATIC_RULES: tuple[RewriteRule, ...] = (
    QUOTE_RULE,
    # Case-sensitive: lowercase <e> is the end-marker tag, not an emoji
    RewriteRule("emoji", re.compile(r"<E>(.*?)</E>"), r"\1"),
    RewriteRule(
        "italic",
        re.compile(rf"<(i|em)>{_START_MARKER}(.*?){_END_MARKER}</\1>", re.IGNORECASE),
        r"*\2*",
    ),
    RewriteRule(
        "bold",
        re.compile(rf"<(b|strong)>{_START_MARKER}(.*?){_END_MARKER}</\1>", re.IGNORECASE),
        r"**\2**",
    ),
    RewriteRule(
        "images_with_alt",
        re.compile(r'<IMG\s+alt="([^"]+)"\s+src="([^"]+)".*?>.*?</IMG>', re.IGNORECASE),
        "\n![\\1](\\2)\n",
    ),
    RewriteRule(
        "images_without_alt",
        re.compile(r'<IMG[^>]*src="([^"]+)"[^>]*>.*?</IMG>', re.IGNORECASE),
        "\n![image](\\1)\n",
    ),
    RewriteRule(
        "bare_urls",
        re.compile(r'<URL url="([^"]+)">.*?</URL>', re.IGNORECASE),
        lambda m: f"\n{m.group(1).strip()}\n",
    ),
    RewriteRule(
        "list_items_with_paragraph",
        re.compile(r"<LI><s>- </s><p>(.*?)</p></LI>", re.IGNORECASE | re.DOTALL),
        _list_item,
    ),
    RewriteRule(
        "list_items",
        re.compile(r"<LI><s>- </s>(.*?)</LI>", re.IGNORECASE | re.DOTALL),
        _list_item,
    ),
    RewriteRule("paragraphs", re.compile(r"</?(p)[^>]*>", re.IGNORECASE), ""),
    RewriteRule("line_breaks", re.compile(r"</?(br|div)[^>]*>", re.IGNORECASE), "\n"),
    RewriteRule("residual_tags", re.compile(r"</?[^>]+>"), ""),
    RewriteRule(
        "entities",
        re.compile(r"&(?:#[0-9]+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);"),
        lambda m: html.unescape(m.group(0)),
    ),
    RewriteRule("line_endings", re.compile(r"\r\n?"), "\n"),
    RewriteRule("blank_lines", re.compile(r"\n{3,}"), "\n\n"),
    RewriteRule("trim", re.compile(r"\A\s+|\s+\Z"), ""),
)


class MarkupTransformer:
    """Converts Flarum post XML to Markdown.

    Args:
        resolve_username: Maps a mention's display name to a target username,
            returning None when no such user exists.
        fallback_username: Username used for mentions that do not resolve.
    """

    rules: tuple[RewriteRule, ...]

    def __init__(self, resolve_username: UsernameResolver, fallback_username: str) -> None:
        if not fallback_username:
            msg = "A fallback username is required for unresolved mentions"
            raise ValueError(msg)
        self.rules = (_mention_rule(resolve_username, fallback_username), *STATIC_RULES)

    def transform(self, raw: str | None) -> str:
        if not raw:
            return ""
        text = raw
        for rule in self.rules:
            text = rule.apply(text)
        return text

    def rule(self, name: str) -> RewriteRule:
        """Return a rule by name, for applying a single pass."""
        for rule in self.rules:
            if rule.name == name:
                return rule
        msg = f"Unknown rewrite rule: {name}"
        raise KeyError(msg)
