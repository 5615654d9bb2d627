# harvester/dom.py
import logging

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

logger = logging.getLogger("harvester.dom")


class HtmlDocument:
    """
    Thin query layer over a parsed page.

    ``select`` always returns matches in document order, and a selector
    the parser rejects simply matches nothing, so selector cascades can
    be written as plain data.
    """

    def __init__(self, html):
        self.html = html or ""
        self.soup = BeautifulSoup(self.html, "lxml")

    def select(self, selector):
        try:
            return self.soup.select(selector)
        except SelectorSyntaxError:
            logger.debug("Unsupported selector skipped: %s", selector)
            return []

    def select_one(self, selector):
        matches = self.select(selector)
        return matches[0] if matches else None

    def first_text(self, selectors, predicate=None):
        """Stripped text of the first selector whose first match is non-empty."""
        for selector in selectors:
            el = self.select_one(selector)
            if el is None:
                continue
            text = el.get_text(" ", strip=True)
            if text and (predicate is None or predicate(text)):
                return text
        return None

    def all_text(self, selector):
        return " ".join(el.get_text(" ", strip=True) for el in self.select(selector))

    def title(self):
        return self.soup.title.get_text(strip=True) if self.soup.title else ""

    def text(self):
        return self.soup.get_text(" ", strip=True)


def parse_html(html):
    return HtmlDocument(html)
