#!/usr/bin/env python3
"""
Preamble Metadata Extractor
Pulls title, author and macro definitions out of a LaTeX source and
isolates the document body for block splitting
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, NamedTuple, Optional

from latex_utils import scan_brace_group


COMMENT_RE = re.compile(r'(?<!\\)%.*')
TITLE_RE = re.compile(r'\\title\{((?:[^{}]|\{[^{}]*\})*)\}')
AUTHOR_RE = re.compile(r'\\author\{((?:[^{}]|\{[^{}]*\})*)\}')
MACRO_RE = re.compile(
    r'\\(newcommand|renewcommand|def|gdef|DeclareMathOperator)(\*?)'
    r'\s*\{?(\\[a-zA-Z0-9]+)\}?(?:\[(\d+)\])?'
)
DOCUMENT_BEGIN_RE = re.compile(r'\\begin\{document\}', re.IGNORECASE)
DOCUMENT_END_RE = re.compile(r'\\end\{document\}[\s\S]*', re.IGNORECASE)


@dataclass(frozen=True)
class PreambleData:
    macros: Dict[str, str] = field(default_factory=dict)
    title: Optional[str] = None
    author: Optional[str] = None

    def signature(self) -> str:
        """Canonical macro serialization, independent of definition order"""
        return json.dumps(self.macros, sort_keys=True)


class MetadataResult(NamedTuple):
    data: PreambleData
    cleaned_text: str


def normalize_newlines(text: str) -> str:
    return text.replace('\r\n', '\n').replace('\r', '\n')


def strip_comments(text: str) -> str:
    return COMMENT_RE.sub('', text)


def _normalize_meta(content: str) -> str:
    return content.replace('\\\\', '<br/>').strip()


def extract_macros(text: str) -> Dict[str, str]:
    """
    Collect macro definitions keyed by command name

    The definition body is the first balanced brace group after the command
    name, found with a depth-counting scan since bodies nest arbitrarily.
    Definitions whose body never closes are skipped.
    """
    macros: Dict[str, str] = {}
    for match in MACRO_RE.finditer(text):
        kind, star, name = match.group(1), match.group(2), match.group(3)
        group = scan_brace_group(text, match.end())
        if group is None:
            continue
        definition = text[group[0]:group[1]].strip()
        if kind == 'DeclareMathOperator':
            operator = '\\operatorname*' if star == '*' else '\\operatorname'
            macros[name] = f'{operator}{{{definition}}}'
        else:
            macros[name] = definition
    return macros


def extract_metadata(text: str) -> MetadataResult:
    """
    Extract title, author and macros from the full source
    Title and author commands are removed from the returned text, macro
    definitions are left in place
    """
    cleaned = strip_comments(text)
    found = {}

    def take(key):
        def replace(match):
            found[key] = _normalize_meta(match.group(1))
            return ''
        return replace

    cleaned = TITLE_RE.sub(take('title'), cleaned)
    cleaned = AUTHOR_RE.sub(take('author'), cleaned)

    data = PreambleData(
        macros=extract_macros(cleaned),
        title=found.get('title'),
        author=found.get('author'),
    )
    return MetadataResult(data, cleaned)


def extract_body(cleaned_text: str) -> str:
    """Return the text between \\begin{document} and \\end{document}"""
    match = DOCUMENT_BEGIN_RE.search(cleaned_text)
    if not match:
        return cleaned_text
    return DOCUMENT_END_RE.sub('', cleaned_text[match.end():])
