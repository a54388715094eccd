#!/usr/bin/env python3
"""
Markdown extension for converting LaTeX math to MathML
Math spans are converted with latex2mathml and stashed before Markdown
parsing, so emphasis and escaping never reach inside formulas. Document
macros are expanded literally before conversion.
"""

import html
import logging
import re
from typing import Dict, List, Optional, Tuple

from latex2mathml.converter import convert as latex2mathml_convert
from markdown.extensions import Extension
from markdown.preprocessors import Preprocessor

from latex_utils import find_closing_brace

logger = logging.getLogger('texpreview.math')

DISPLAY_MATH_RE = re.compile(r'\$\$([\s\S]+?)\$\$')
INLINE_MATH_RE = re.compile(r'\$((?:\\.|[^\\$])+)\$')
ARG_RE = re.compile(r'#(\d)')
# latex2mathml has no aligned/gathered; these are the tables it does lay out
ENVIRONMENT_SUBSTITUTES = (
    (re.compile(r'\\begin\{aligned\}'), r'\\begin{align*}'),
    (re.compile(r'\\end\{aligned\}'), r'\\end{align*}'),
    (re.compile(r'\\begin\{gathered\}'), r'\\begin{array}{c}'),
    (re.compile(r'\\end\{gathered\}'), r'\\end{array}'),
)
CONTROL_SEQUENCE_RE = re.compile(r'\\(?:[a-zA-Z]+|.)')
MAX_EXPANSIONS = 1000


class MacroExpansionError(ValueError):
    pass


def macro_arity(body: str) -> int:
    return max((int(n) for n in ARG_RE.findall(body)), default=0)


def read_argument(tex: str, pos: int) -> Tuple[Optional[str], int]:
    """Read one macro argument: a brace group, a control sequence or a character"""
    while pos < len(tex) and tex[pos].isspace():
        pos += 1
    if pos >= len(tex):
        return None, pos
    if tex[pos] == '{':
        end = find_closing_brace(tex, pos)
        if end == -1:
            return None, pos
        return tex[pos + 1:end], end + 1
    match = CONTROL_SEQUENCE_RE.match(tex, pos)
    if match:
        return match.group(0), match.end()
    return tex[pos], pos + 1


def expand_macros(tex: str, macros: Dict[str, str], max_expansions: int = MAX_EXPANSIONS) -> str:
    """
    Substitute macro bodies into tex, filling #1..#9 from the arguments
    Replacements are rescanned so macros may use other macros
    """
    if not macros:
        return tex
    names = sorted(macros, key=len, reverse=True)
    pattern = re.compile('|'.join(re.escape(name) + r'(?![a-zA-Z])' for name in names))

    expansions = 0
    pos = 0
    while True:
        match = pattern.search(tex, pos)
        if not match:
            return tex
        expansions += 1
        if expansions > max_expansions:
            raise MacroExpansionError(f"Macro expansion limit exceeded at {match.group(0)}")

        body = macros[match.group(0)]
        args: List[str] = []
        end = match.end()
        for _ in range(macro_arity(body)):
            arg, end = read_argument(tex, end)
            if arg is None:
                break
            args.append(arg)

        def fill(arg_match):
            index = int(arg_match.group(1))
            return args[index - 1] if 1 <= index <= len(args) else ''

        tex = tex[:match.start()] + ARG_RE.sub(fill, body) + tex[end:]
        pos = match.start()


def substitute_environments(tex: str) -> str:
    for pattern, replacement in ENVIRONMENT_SUBSTITUTES:
        tex = pattern.sub(replacement, tex)
    return tex


def render_math(tex: str, display: bool = False, macros: Optional[Dict[str, str]] = None) -> str:
    """
    Convert one formula to MathML
    Conversion errors come back as an inline error marker instead of raising
    """
    try:
        source = substitute_environments(expand_macros(tex.strip(), macros or {}))
        mathml = latex2mathml_convert(source, display='block' if display else 'inline')
    except Exception as e:
        logger.debug(f"Math error in {tex!r}: {e}")
        return (f'<span class="latex-math-error" style="color:#cc0000" '
                f'title="{html.escape(str(e))}">{html.escape(tex)}</span>')

    if display:
        return f'<div class="math-display">{mathml}</div>'
    return f'<span class="math-inline">{mathml}</span>'


class MathPreprocessor(Preprocessor):
    def __init__(self, md, macros):
        super().__init__(md)
        self.macros = macros

    def run(self, lines):
        text = '\n'.join(lines)
        text = DISPLAY_MATH_RE.sub(self._display, text)
        text = INLINE_MATH_RE.sub(self._inline, text)
        return text.split('\n')

    def _display(self, match):
        placeholder = self.md.htmlStash.store(render_math(match.group(1), True, self.macros))
        return f'\n\n{placeholder}\n\n'

    def _inline(self, match):
        return self.md.htmlStash.store(render_math(match.group(1), False, self.macros))


class MathExtension(Extension):
    def __init__(self, **kwargs):
        self.config = {
            'macros': [{}, 'Mapping of command names to replacement text'],
        }
        super().__init__(**kwargs)

    def extendMarkdown(self, md):
        # after html_block (20) so math inside raw HTML blocks stays literal
        md.preprocessors.register(MathPreprocessor(md, self.getConfig('macros')), 'latex_math', 15)
