from __future__ import annotations

from dataclasses import asdict, dataclass, field
import re

from bs4 import BeautifulSoup, Tag


@dataclass
class Heading:
    level: int
    content: str


@dataclass
class ListBlock:
    list_type: str
    items: list[str]


@dataclass
class Table:
    headers: list[str]
    rows: list[list[str]]


@dataclass
class Link:
    href: str
    text: str


@dataclass
class StructuredContent:
    title: str | None = None
    headings: list[Heading] = field(default_factory=list)
    paragraphs: list[str] = field(default_factory=list)
    lists: list[ListBlock] = field(default_factory=list)
    tables: list[Table] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)


@dataclass
class ExtractedContent:
    raw_text: str
    structured: StructuredContent

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def is_empty(self) -> bool:
        return not self.raw_text and not self.structured.paragraphs


_WHITESPACE = re.compile(r"\s+")


def _sanitize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _extract_raw_text(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    lines = (_sanitize(line) for line in body.get_text("\n").split("\n"))
    return "\n".join(line for line in lines if line)


def _extract_title(soup: BeautifulSoup) -> str | None:
    if soup.title and soup.title.string:
        return _sanitize(soup.title.string) or None
    return None


def _extract_headings(soup: BeautifulSoup) -> list[Heading]:
    headings = []
    for level in range(1, 7):
        for tag in soup.find_all(f"h{level}"):
            headings.append(Heading(level=level, content=_sanitize(tag.get_text(" "))))
    return headings


def _extract_lists(soup: BeautifulSoup) -> list[ListBlock]:
    lists = []
    for tag in soup.find_all(["ul", "ol", "dl"]):
        if tag.name == "dl":
            children = tag.find_all(["dt", "dd"], recursive=False)
            list_type = "definition"
        else:
            children = tag.find_all("li", recursive=False)
            list_type = "ordered" if tag.name == "ol" else "unordered"
        items = [_sanitize(child.get_text(" ")) for child in children]
        lists.append(ListBlock(list_type=list_type, items=items))
    return lists


def _extract_table(table: Tag) -> Table:
    headers = [_sanitize(th.get_text(" ")) for th in table.find_all("th")]
    rows = []
    for tr in table.find_all("tr"):
        row = [_sanitize(td.get_text(" ")) for td in tr.find_all("td")]
        if row:
            rows.append(row)
    return Table(headers=headers, rows=rows)


def _extract_links(soup: BeautifulSoup) -> list[Link]:
    links = []
    for tag in soup.find_all("a", href=True):
        href = tag.get("href", "").strip()
        text = _sanitize(tag.get_text(" "))
        if href and text:
            links.append(Link(href=href, text=text))
    return links


def extract(html: str, base_url: str) -> ExtractedContent:
    """Default extraction collaborator: raw text plus structured content.

    Link hrefs are returned as written; resolving them against ``base_url``
    is left to URL normalisation.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript"]):
        tag.decompose()
    structured = StructuredContent(
        title=_extract_title(soup),
        headings=_extract_headings(soup),
        paragraphs=[
            text
            for text in (_sanitize(p.get_text(" ")) for p in soup.find_all("p"))
            if text
        ],
        lists=_extract_lists(soup),
        tables=[_extract_table(table) for table in soup.find_all("table")],
        links=_extract_links(soup),
    )
    return ExtractedContent(raw_text=_extract_raw_text(soup), structured=structured)
