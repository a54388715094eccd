#!/usr/bin/env python3
"""
LaTeX Block Splitter
Partitions document body text into independently renderable blocks,
splitting only at blank lines and display-math starts while respecting
open environments and braces
"""

import re
from typing import List


TOKEN_RE = re.compile(
    r'(?:\\\$|\\\{|\\\})'
    r'|(?:(?<!\\)%.*)'
    r'|(\\begin\{([^}]+)\})'
    r'|(\\end\{([^}]+)\})'
    r'|(\{)'
    r'|(\})'
    r'|(\n\s*\n)'
    r'|(?<!\\)(\$\$|\\\[|\\\])'
)

TRANSPARENT_ENVS = frozenset(('proof', 'itemize', 'enumerate'))
DISPLAY_MATH_ENV_RE = re.compile(r'^(equation|align|gather|multline|flalign|alignat)\*?$')
FLOAT_ENV_RE = re.compile(r'^(figure|table|algorithm)\*?$')

DOLLAR_MATH = '$$'
BRACKET_MATH = '\\['


class LatexBlockSplitter:
    """
    Single-use scanner; call split() or use split_blocks()

    Every character of the input ends up in exactly one block, so joining
    the result reproduces the input.
    """

    def __init__(self):
        self.blocks: List[str] = []
        self.buffer = ''
        self.env_stack: List[str] = []
        self.brace_depth = 0

    @property
    def at_top_level(self) -> bool:
        return not self.env_stack and self.brace_depth == 0

    def flush(self):
        # whitespace-only buffers carry over into the next block
        if self.buffer.strip():
            self.blocks.append(self.buffer)
            self.buffer = ''

    def pop_env(self, name: str):
        for index in range(len(self.env_stack) - 1, -1, -1):
            if self.env_stack[index] == name:
                del self.env_stack[index:]
                return

    def split(self, text: str) -> List[str]:
        last_index = 0
        for match in TOKEN_RE.finditer(text):
            self.buffer += text[last_index:match.start()]
            self.consume(match)
            last_index = match.end()

        self.buffer += text[last_index:]
        if self.buffer.strip():
            self.blocks.append(self.buffer)
        elif self.buffer:
            if self.blocks:
                self.blocks[-1] += self.buffer
            else:
                self.blocks.append(self.buffer)
        self.buffer = ''
        return self.blocks

    def consume(self, match):
        token = match.group(0)
        begin_name, end_name = match.group(2), match.group(4)

        if begin_name is not None:
            if begin_name not in TRANSPARENT_ENVS:
                if self.at_top_level and (DISPLAY_MATH_ENV_RE.match(begin_name)
                                          or FLOAT_ENV_RE.match(begin_name)):
                    self.flush()
                self.env_stack.append(begin_name)
            self.buffer += token
        elif end_name is not None:
            if end_name not in TRANSPARENT_ENVS:
                self.pop_env(end_name)
            self.buffer += token
            if FLOAT_ENV_RE.match(end_name) and self.at_top_level:
                self.flush()
        elif match.group(5):
            self.brace_depth += 1
            self.buffer += token
        elif match.group(6):
            self.brace_depth -= 1
            self.buffer += token
        elif match.group(7):
            self.buffer += token
            if self.at_top_level:
                self.flush()
        elif match.group(8):
            self.math_delimiter(token)
        else:
            # escaped symbols and comments are literal
            self.buffer += token

    def math_delimiter(self, token: str):
        if token == DOLLAR_MATH and self.env_stack and self.env_stack[-1] == DOLLAR_MATH:
            self.env_stack.pop()
        elif token == '\\]':
            self.pop_env(BRACKET_MATH)
        else:
            if self.at_top_level:
                self.flush()
            self.env_stack.append(token)
        self.buffer += token


def split_blocks(text: str) -> List[str]:
    """Split body text into blocks whose concatenation equals text"""
    return LatexBlockSplitter().split(text)
