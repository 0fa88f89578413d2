import re
from dataclasses import dataclass
from urllib.parse import urljoin

from bs4 import BeautifulSoup

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ParsedPage:
    title: str
    text: str
    links: list[str]


def parse_page(html: str, base_url: str) -> ParsedPage:
    soup = BeautifulSoup(html or "", "lxml")
    title = _extract_title(soup)
    links = _extract_links(soup, base_url)
    text = _extract_text(soup)
    return ParsedPage(title=title, text=text, links=links)


def page_text(html: str) -> str:
    if not html or not html.strip():
        return ""
    return _extract_text(BeautifulSoup(html, "lxml"))


def page_title(html: str) -> str:
    return _extract_title(BeautifulSoup(html or "", "lxml"))


def _extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string and soup.title.string.strip():
        return soup.title.string.strip()
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(" ", strip=True)
    return ""


def _extract_text(soup: BeautifulSoup) -> str:
    # Script and style bodies are not page text.
    for tag in soup(["script", "style", "noscript", "template", "svg"]):
        tag.decompose()
    raw = soup.get_text(" ", strip=True)
    return _WHITESPACE.sub(" ", raw).strip()


def _extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href:
            continue
        absolute = urljoin(base_url, href)
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links
