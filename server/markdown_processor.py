#!/usr/bin/env python3
"""
Markdown Processor
Uses python-markdown with raw HTML passthrough, bare URL autolinking,
typographic substitutions and MathML math rendering
The engine is rebuilt only when the document's macro set changes
"""

import logging
from typing import Dict, Optional

import markdown

from math_extension import MathExtension

logger = logging.getLogger('texpreview.markdown')


class MarkdownProcessor:
    def __init__(self, macros: Optional[Dict[str, str]] = None):
        self.macros: Dict[str, str] = {}
        self._md = None
        self.rebuild_count = 0
        self.rebuild(macros or {})

    def rebuild(self, macros: Dict[str, str]):
        """Create a fresh Markdown instance whose math renderer knows macros"""
        self.macros = dict(macros)
        self._md = markdown.Markdown(extensions=[
            'markdown.extensions.tables',
            'markdown.extensions.sane_lists',
            'markdown.extensions.smarty',
            'pymdownx.magiclink',
            MathExtension(macros=self.macros),
        ])
        self.rebuild_count += 1
        logger.debug(f"Markdown engine rebuilt with {len(self.macros)} macros")

    def convert(self, text: str) -> str:
        self._md.reset()
        return self._md.convert(text)
