#!/usr/bin/env python3
"""
Incremental Diff Engine
Keeps the rendered blocks of one preview session and re-renders only the
blocks that changed since the previous call, producing a full or patch
payload for the display side
"""

import html
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from block_splitter import split_blocks
from latex_processor import LaTeXProcessor, post_process_html
from markdown_processor import MarkdownProcessor
from preamble import extract_body, extract_metadata, normalize_newlines

logger = logging.getLogger('texpreview.engine')

FULL_RENDER_THRESHOLD = 50
MAKETITLE = '\\maketitle'


@dataclass
class Block:
    text: str
    html: str


@dataclass(frozen=True)
class FullPayload:
    html: str

    def to_dict(self):
        return {'type': 'full', 'html': self.html}


@dataclass(frozen=True)
class PatchPayload:
    start: int
    delete_count: int
    htmls: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self):
        return {
            'type': 'patch',
            'start': self.start,
            'deleteCount': self.delete_count,
            'htmls': list(self.htmls),
        }


Payload = Union[FullPayload, PatchPayload]


@dataclass(frozen=True)
class BlockDiff:
    start: int
    delete_count: int
    end: int
    inserted: List[str]
    deleted: List[str]


def compute_block_diff(old_texts: Sequence[str], new_texts: Sequence[str]) -> BlockDiff:
    """
    Prefix/suffix scan between two block text lists
    Moved blocks are reported as a delete plus an insert over the whole span
    """
    start = 0
    shortest = min(len(old_texts), len(new_texts))
    while start < shortest and old_texts[start] == new_texts[start]:
        start += 1

    end = 0
    max_end = shortest - start
    while end < max_end and old_texts[-1 - end] == new_texts[-1 - end]:
        end += 1

    return BlockDiff(
        start=start,
        delete_count=len(old_texts) - start - end,
        end=end,
        inserted=list(new_texts[start:len(new_texts) - end]),
        deleted=list(old_texts[start:len(old_texts) - end]),
    )


def apply_patch(htmls: Sequence[str], payload: Payload) -> List[str]:
    """Apply a payload to a displayed block list the way the preview page does"""
    if isinstance(payload, FullPayload):
        raise ValueError("Full payloads replace the whole document")
    start = payload.start
    return list(htmls[:start]) + list(payload.htmls) + list(htmls[start + payload.delete_count:])


class IncrementalDiffEngine:
    """
    One instance per live preview session
    Call reset() before reusing it for another document
    """

    def __init__(self, latex_processor: Optional[LaTeXProcessor] = None,
                 markdown_processor: Optional[MarkdownProcessor] = None,
                 full_threshold: int = FULL_RENDER_THRESHOLD):
        self.latex_processor = latex_processor or LaTeXProcessor()
        self.markdown_processor = markdown_processor or MarkdownProcessor()
        self.full_threshold = full_threshold

        self.blocks: List[Block] = []
        self.macro_signature: Optional[str] = None
        self.title: Optional[str] = None
        self.author: Optional[str] = None

        self.rendered_blocks = 0
        self.reused_blocks = 0

    def reset(self):
        self.blocks = []
        self.macro_signature = None
        logger.debug("Engine state reset")

    def current_html(self) -> str:
        return ''.join(block.html for block in self.blocks)

    def stats(self):
        return {
            'blocks': len(self.blocks),
            'rendered_blocks': self.rendered_blocks,
            'reused_blocks': self.reused_blocks,
            'markdown_rebuilds': self.markdown_processor.rebuild_count,
        }

    def render(self, full_text: str) -> Payload:
        """Render the complete current document text into a payload"""
        data, cleaned = extract_metadata(normalize_newlines(full_text))

        signature = data.signature()
        if signature != self.macro_signature:
            self.markdown_processor.rebuild(data.macros)
            self.blocks = []
            self.macro_signature = signature
        self.title = data.title
        self.author = data.author

        fingerprint = f'[meta:{data.title or ""}|{data.author or ""}]'
        sources = [chunk.strip() for chunk in split_blocks(extract_body(cleaned))]
        keyed = [(src + fingerprint if MAKETITLE in src else src, src) for src in sources if src]

        old_blocks = self.blocks
        diff = compute_block_diff([block.text for block in old_blocks], [key for key, _ in keyed])

        middle = keyed[diff.start:len(keyed) - diff.end]
        inserted = [Block(key, self.render_block(src)) for key, src in middle]
        self.blocks = (old_blocks[:diff.start] + inserted
                       + old_blocks[len(old_blocks) - diff.end:])

        self.rendered_blocks += len(inserted)
        self.reused_blocks += len(self.blocks) - len(inserted)
        logger.debug(f"Diff start={diff.start} delete={diff.delete_count} "
                     f"insert={len(inserted)} total={len(self.blocks)}")

        if (not old_blocks or len(inserted) > self.full_threshold
                or diff.delete_count > self.full_threshold):
            return FullPayload(self.current_html())
        return PatchPayload(diff.start, diff.delete_count, tuple(block.html for block in inserted))

    def render_block(self, source: str) -> str:
        """Transform and render one block; failures stay inside the block"""
        try:
            result = self.latex_processor.process(source, self.title, self.author)
            body = self.markdown_processor.convert(result.text)
            if result.needs_post_process:
                body = post_process_html(body)
        except Exception as e:
            logger.error(f"Error rendering block: {e}", exc_info=True)
            body = f"<p style='color: red;'>Error rendering block: {html.escape(str(e))}</p>"
        return f'<div class="latex-block">{body}</div>'
