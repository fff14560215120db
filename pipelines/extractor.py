"""Main-content extraction from fetched HTML.

Extraction is an ordered chain of plain functions. Each takes ``(html, url)``
and returns an ``ExtractionResult`` or None; the first result that passes the
quality gate wins. A stage that raises is logged and skipped.
"""

import functools
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import trafilatura
from bs4 import BeautifulSoup, Tag

from config.crawler_config import crawler_config
from observability.metrics import record_extraction

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"

NOISE_TAGS = ['script', 'style', 'noscript', 'nav', 'footer', 'header', 'aside', 'form', 'iframe']

NOISE_SELECTORS = [
    '.advertisement',
    '.ads',
    '.social',
    '.comments',
    '.sidebar',
    '.navigation',
    '.menu',
    '.breadcrumb',
    '.cookie',
    '.popup',
    '[class*="ad-"]',
    '[class*="advertisement"]',
    '[class*="banner"]',
    '[class*="sidebar"]',
    '[class*="cookie"]',
    '[class*="social"]',
    '[class*="share"]',
    '[id*="comment"]',
]

CONTAINER_SELECTORS = [
    'main article',
    '[role="main"] article',
    'main',
    'article',
    '[role="main"]',
    '.content',
    '#content',
    '.main-content',
    '#main-content',
    '.post-content',
    '.entry-content',
    '.article-content',
    '.content-area',
]

TEXT_BLOCK_TAGS = ['p', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'li']

_SENTENCE_SPLIT = re.compile(r'[.!?]+')
_TITLE_SUFFIX = re.compile(r'\s*[|\-–]\s.*$')


@dataclass
class ExtractionResult:
    """Clean text pulled out of a page."""
    title: str
    content: str
    word_count: int
    method: str


Extractor = Callable[[str, str], Optional[ExtractionResult]]


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace to single spaces."""
    return ' '.join(text.split())


def count_words(text: str) -> int:
    return len(text.split())


def count_sentences(text: str, min_chars: int = 10) -> int:
    return sum(1 for piece in _SENTENCE_SPLIT.split(text) if len(piece.strip()) >= min_chars)


def passes_quality_gate(result: Optional[ExtractionResult], settings: Optional[Dict[str, int]] = None) -> bool:
    """Check minimum length, word and sentence counts."""
    if result is None or not result.content:
        return False

    settings = settings or crawler_config.get_extraction_settings()
    if len(result.content) < settings['min_chars']:
        return False
    if result.word_count < settings['min_words']:
        return False
    return count_sentences(result.content, settings['min_sentence_chars']) >= settings['min_sentences']


def _join_blocks(blocks: Sequence[str]) -> str:
    return '\n\n'.join(block for block in blocks if block)


def _make_result(title: Optional[str], blocks: Sequence[str], method: str) -> ExtractionResult:
    content = _join_blocks(blocks)
    return ExtractionResult(
        title=title or UNTITLED,
        content=content,
        word_count=count_words(content),
        method=method
    )


def extract_title(soup: BeautifulSoup) -> Optional[str]:
    """Pick a page title from headings, <title> and social meta tags."""
    def first_text(selector: str) -> str:
        element = soup.select_one(selector)
        return normalize_whitespace(element.get_text()) if element else ''

    def meta_content(attrs: Dict[str, str]) -> str:
        element = soup.find('meta', attrs=attrs)
        return normalize_whitespace(element.get('content', '')) if element else ''

    candidates = [
        lambda: first_text('h1'),
        lambda: first_text('[class*="title"], [class*="headline"]'),
        lambda: _TITLE_SUFFIX.sub('', first_text('title')).strip(),
        lambda: meta_content({'property': 'og:title'}),
        lambda: meta_content({'name': 'twitter:title'}),
    ]

    for candidate in candidates:
        title = candidate()
        if title and 3 < len(title) < 200:
            return title
    return None


def remove_noise(soup: BeautifulSoup) -> None:
    """Strip boilerplate elements and link-farm blocks in place."""
    for element in soup.find_all(NOISE_TAGS):
        if not element.decomposed:
            element.decompose()

    for element in soup.select(', '.join(NOISE_SELECTORS)):
        if not element.decomposed:
            element.decompose()

    # Short blocks that are mostly links are menus or tag clouds
    for element in soup.find_all(['div', 'section']):
        if element.decomposed:
            continue
        if len(element.get_text(strip=True)) < 100 and len(element.find_all('a')) > 3:
            element.decompose()


def _leaf_blocks(container: Tag) -> List[str]:
    blocks = []
    for element in container.find_all(TEXT_BLOCK_TAGS):
        if element.find(TEXT_BLOCK_TAGS):
            continue
        text = normalize_whitespace(element.get_text(' '))
        if text:
            blocks.append(text)
    return blocks


def _find_container(soup: BeautifulSoup, min_chars: int) -> Optional[Tag]:
    for selector in CONTAINER_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and len(normalize_whitespace(element.get_text(' '))) > min_chars:
            return element
    return soup.body or soup


def extract_article(html: str, url: str) -> Optional[ExtractionResult]:
    """Reader-mode extraction with trafilatura."""
    text = trafilatura.extract(html, url=url, include_comments=False, include_tables=True)
    if not text:
        return None

    blocks = [normalize_whitespace(line) for line in text.splitlines()]
    metadata = trafilatura.extract_metadata(html, default_url=url)
    title = metadata.title if metadata is not None and metadata.title else None
    if not title:
        title = extract_title(BeautifulSoup(html, 'html.parser'))

    return _make_result(title, blocks, 'article')


def extract_heuristic(html: str, url: str, min_chars: Optional[int] = None) -> Optional[ExtractionResult]:
    """Selector-based extraction with BeautifulSoup.

    ``min_chars`` is how much text a content container needs before it is
    preferred over <body>.
    """
    soup = BeautifulSoup(html, 'html.parser')

    # Title first: <header> and friends are about to be removed
    title = extract_title(soup)
    remove_noise(soup)

    if min_chars is None:
        min_chars = crawler_config.get('extraction.container_min_chars', 200)
    container = _find_container(soup, min_chars)
    blocks = _leaf_blocks(container)
    if not blocks:
        text = normalize_whitespace(container.get_text(' '))
        blocks = [text] if text else []

    if not blocks:
        return None

    if title and blocks[0] != title:
        blocks.insert(0, title)

    return _make_result(title, blocks, 'heuristic')


def default_extractors(settings: Optional[Dict[str, int]] = None) -> List[Extractor]:
    """Article extraction, then the heuristic bound to the configured container threshold."""
    settings = settings or crawler_config.get_extraction_settings()
    heuristic = functools.partial(extract_heuristic, min_chars=int(settings.get('container_min_chars', 200)))
    functools.update_wrapper(heuristic, extract_heuristic)
    return [extract_article, heuristic]


def extract_content(html: str, url: str,
                    extractors: Optional[Sequence[Extractor]] = None,
                    settings: Optional[Dict[str, int]] = None) -> Optional[ExtractionResult]:
    """Run the extractor chain and return the first result that passes the quality gate."""
    for extractor in extractors or default_extractors(settings):
        try:
            result = extractor(html, url)
        except Exception as e:
            logger.warning(f"Extractor {extractor.__name__} failed for {url}: {e}")
            continue

        if passes_quality_gate(result, settings):
            logger.debug(f"Extracted {result.word_count} words from {url} via {result.method}")
            record_extraction(result.method)
            return result

    logger.info(f"No extractable content at {url}")
    record_extraction('none')
    return None
