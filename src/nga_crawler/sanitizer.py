"""
Allow-list HTML sanitizer built on BeautifulSoup.

First pass: drop comments and script-like elements with their content,
unwrap every other element outside the allow-list, and strip attributes
that are not allowed for the element. Second pass: route every link and
image URL through SafeUrlPolicy and force the rendering attributes the
front-end relies on.
"""

from typing import Dict, FrozenSet, Optional

from bs4 import BeautifulSoup, Comment
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

from .url_policy import SafeUrlPolicy


ALLOWED_TAGS: Dict[str, FrozenSet[str]] = {
    "a": frozenset({"href", "rel", "target"}),
    "br": frozenset(),
    "blockquote": frozenset(),
    "pre": frozenset(),
    "code": frozenset(),
    "strong": frozenset(),
    "em": frozenset(),
    "u": frozenset(),
    "s": frozenset(),
    "del": frozenset(),
    "ul": frozenset(),
    "ol": frozenset(),
    "li": frozenset(),
    "img": frozenset({"src", "alt", "loading", "referrerpolicy"}),
}

# Removed together with everything inside them
DROP_WITH_CONTENT = frozenset({
    "script", "style", "iframe", "object", "embed", "noscript", "template",
    "head", "title", "textarea", "select",
})

LINK_REL = "nofollow noopener noreferrer"

# Void elements render as <br>, attribute values keep XML escaping
OUTPUT_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)


class HtmlSanitizer:
    """Reduce an HTML fragment to the allow-listed subset."""

    def __init__(self, url_policy: Optional[SafeUrlPolicy] = None):
        self.url_policy = url_policy or SafeUrlPolicy()

    def sanitize(self, fragment: str) -> str:
        if not fragment:
            return ""

        soup = BeautifulSoup(fragment, "html.parser", multi_valued_attributes=None)

        for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
            comment.extract()

        for tag in soup.find_all(True):
            if tag.decomposed:
                continue
            name = tag.name.lower()
            if name in DROP_WITH_CONTENT:
                tag.decompose()
            elif name not in ALLOWED_TAGS:
                tag.unwrap()
            else:
                allowed = ALLOWED_TAGS[name]
                tag.attrs = {key: value for key, value in tag.attrs.items() if key.lower() in allowed}

        for anchor in soup.find_all("a"):
            href = self.url_policy.normalize(anchor.get("href"))
            if href is None:
                anchor.attrs = {}
            else:
                anchor.attrs = {"href": href, "rel": LINK_REL, "target": "_blank"}

        for image in soup.find_all("img"):
            src = self.url_policy.normalize(image.get("src"))
            if src is None:
                image.decompose()
                continue
            image.attrs = {
                "src": src,
                "alt": image.get("alt") or "",
                "loading": "lazy",
                "referrerpolicy": "no-referrer",
            }

        return soup.decode(formatter=OUTPUT_FORMATTER).strip()
