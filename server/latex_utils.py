#!/usr/bin/env python3
"""
LaTeX text helpers
Brace scanning, roman numerals and list-aware style wrapping shared by the
preamble extractor, the LaTeX processor and the math extension
"""

import re
from typing import Optional, Tuple


ROMAN_NUMERALS = (
    ('M', 1000), ('CM', 900), ('D', 500), ('CD', 400),
    ('C', 100), ('XC', 90), ('L', 50), ('XL', 40),
    ('X', 10), ('IX', 9), ('V', 5), ('IV', 4), ('I', 1),
)

LIST_LINE_RE = re.compile(r'^(\s*)([-*+]|\d+\.)\s+(.*)$')
LIST_MARKER_RE = re.compile(r'^\s*([-*+]|\d+\.)\s')


def find_closing_brace(text: str, open_index: int) -> int:
    """
    Return the index of the brace closing the one at open_index, or -1
    Backslash-escaped characters never count as braces
    """
    depth = 0
    i = open_index
    while i < len(text):
        char = text[i]
        if char == '\\':
            i += 2
            continue
        if char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def scan_brace_group(text: str, start: int) -> Optional[Tuple[int, int]]:
    """
    Find the first balanced {...} group at or after start
    Returns (content_start, content_end) or None when it never closes
    """
    i = start
    while i < len(text):
        char = text[i]
        if char == '\\':
            i += 2
            continue
        if char == '{':
            end = find_closing_brace(text, i)
            if end == -1:
                return None
            return i + 1, end
        i += 1
    return None


def to_roman(number: int, uppercase: bool = False) -> str:
    roman = ''
    for letter, value in ROMAN_NUMERALS:
        while number >= value:
            roman += letter
            number -= value
    return roman if uppercase else roman.lower()


def capitalize_first(word: str) -> str:
    return word[:1].upper() + word[1:]


def escape_attr(value: str) -> str:
    return value.replace('"', '&quot;')


def apply_style_to_list(start_tag: str, end_tag: str, content: str) -> str:
    """
    Wrap content in start_tag/end_tag without hiding Markdown list markers

    When any line looks like a list item, each line is styled on its own and
    the indent and marker stay outside the tags. Blank lines pass through.
    """
    lines = re.split(r'\r?\n', content)
    if not any(LIST_MARKER_RE.match(line) for line in lines):
        return f'{start_tag}{content}{end_tag}'

    styled = []
    for line in lines:
        match = LIST_LINE_RE.match(line)
        if match:
            indent, bullet, inner = match.groups()
            styled.append(f'{indent}{bullet} {start_tag}{inner}{end_tag}')
        elif line.strip():
            styled.append(f'{start_tag}{line}{end_tag}')
        else:
            styled.append(line)
    return '\n'.join(styled)
