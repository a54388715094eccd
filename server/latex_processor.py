#!/usr/bin/env python3
"""
LaTeX Block Processor
Rewrites one block of LaTeX source into Markdown with embedded HTML

Rules run in priority order over the whole block. Fragments that must not
be touched by later rules (escaped symbols, math, markers) are swapped for
placeholder tokens and restored verbatim at the end.
"""

import html
import importlib.util
import logging
import re
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional

from latex_utils import (
    apply_style_to_list,
    capitalize_first,
    escape_attr,
    to_roman,
)

logger = logging.getLogger('texpreview.latex')

PROTECTED_TOKEN_RE = re.compile(r'%%%PROTECTED_BLOCK_(\d+)%%%')
SPECIAL_BLOCK_RE = re.compile(r'%%%(ABSTRACT|KEYWORDS)_START%%%')
MAX_RESTORE_DEPTH = 15

NO_INDENT_MARKER = '<span class="no-indent-marker"></span>'
NESTED = r'(?:[^{}]|\{[^{}]*\})*'

THEOREM_ENVS = ('theorem', 'lemma', 'proposition', 'condition', 'assumption',
                'remark', 'definition', 'corollary', 'example')


class TransformContext:
    """Per-block state handed to every rule"""

    def __init__(self, title: Optional[str] = None, author: Optional[str] = None):
        self.title = title
        self.author = author
        self.protected: List[str] = []

    def protect_inline(self, content: str) -> str:
        self.protected.append(content)
        return f'%%%PROTECTED_BLOCK_{len(self.protected) - 1}%%%'

    def protect_display(self, content: str) -> str:
        return f'\n\n{self.protect_inline(content)}\n\n'

    def restore(self, text: str) -> str:
        """Substitute tokens back, including tokens nested in protected content"""
        def replace(match):
            index = int(match.group(1))
            if index < len(self.protected):
                return self.protected[index]
            return match.group(0)

        for _ in range(MAX_RESTORE_DEPTH):
            if not PROTECTED_TOKEN_RE.search(text):
                break
            text = PROTECTED_TOKEN_RE.sub(replace, text)
        return text


class Rule(NamedTuple):
    name: str
    priority: int
    apply: Callable[[str, TransformContext], str]


class TransformResult(NamedTuple):
    text: str
    needs_post_process: bool


def hide_labels(content: str):
    """Strip \\label{} from math, returning hidden anchors to place after it"""
    anchors = []

    def replace(match):
        label = escape_attr(match.group(1))
        anchors.append(f'<span id="{label}" class="latex-label-anchor" '
                       f'data-label="{label}" style="display:none"></span>')
        return ''

    clean = re.sub(r'\\label\{([^}]+)\}', replace, content)
    return clean, ''.join(anchors)


# --- Rules ---

def escaped_chars(text, ctx):
    entities = {'$': '&#36;', '#': '&#35;', '&': '&amp;', '%': '&#37;'}
    return re.sub(r'\\([$%#&])', lambda m: ctx.protect_inline(entities[m.group(1)]), text)


def roman_numerals(text, ctx):
    text = re.sub(
        r'\\(Rmnum|rmnum|romannumeral)\s*\{?(\d+)\}?',
        lambda m: to_roman(int(m.group(2)), m.group(1) == 'Rmnum'),
        text,
    )
    return re.sub(r'\\noindent\s*', lambda m: ctx.protect_inline(NO_INDENT_MARKER), text)


DISPLAY_MATH_RE = re.compile(
    r'(\$\$([\s\S]*?)\$\$)'
    r'|((?<!\\)\\\[([\s\S]*?)\\\])'
    r'|(\\begin\{(equation|align|gather|multline|flalign|alignat)(\*?)\}([\s\S]*?)\\end\{\6\7\})',
    re.IGNORECASE,
)


def display_math(text, ctx):
    def replace(match):
        if match.group(1) is not None:
            content = match.group(2)
        elif match.group(3) is not None:
            content = match.group(4)
        else:
            content = match.group(8)

        content, anchors = hide_labels(content)
        math = content.strip()
        env = (match.group(6) or '').lower()
        if env == 'alignat':
            math = re.sub(r'^\{\d+\}\s*', '', math)
        if env in ('align', 'flalign', 'alignat', 'multline'):
            math = f'\\begin{{aligned}}\n{math}\n\\end{{aligned}}'
        elif env == 'gather':
            math = f'\\begin{{gathered}}\n{math}\n\\end{{gathered}}'

        after = match.string[match.end():]
        followed_by_text = re.match(r'\s*\S', after) and not re.match(r'\s*\n\n', after)
        placeholder = ctx.protect_display(f'$$\n{math}\n$$\n{anchors}')
        return placeholder + NO_INDENT_MARKER if followed_by_text else placeholder

    return DISPLAY_MATH_RE.sub(replace, text)


def inline_math(text, ctx):
    return re.sub(r'\$(?:\\.|[^\\$])*\$', lambda m: ctx.protect_inline(m.group(0)), text)


THEOREM_RE = re.compile(
    r'\\begin\{(%s)\}(?:\[(.*?)\])?([\s\S]*?)\\end\{\1\}' % '|'.join(THEOREM_ENVS),
    re.IGNORECASE,
)


def theorems_and_proofs(text, ctx):
    def theorem(match):
        name, qualifier, body = match.groups()
        header = ('\n<span class="latex-thm-head"><strong class="latex-theorem-header">'
                  f'{capitalize_first(name)}</strong>')
        if qualifier:
            header += f'&nbsp;({qualifier})'
        return f'{header}.</span>&nbsp; {body.strip()}\n'

    def proof(match):
        title = f'Proof ({match.group(1)}).' if match.group(1) else 'Proof.'
        return f'\n{NO_INDENT_MARKER}**{title}** '

    text = THEOREM_RE.sub(theorem, text)
    text = re.sub(r'\\begin\{proof\}(?:\[(.*?)\])?', proof, text, flags=re.IGNORECASE)
    return re.sub(r'\\end\{proof\}', ' <span style="float:right;">QED</span>\n', text,
                  flags=re.IGNORECASE)


def maketitle_and_abstract(text, ctx):
    if '\\maketitle' in text:
        block = ''
        if ctx.title:
            block += f'<h1 class="latex-title">{ctx.title}</h1>'
        if ctx.author:
            block += f'<div class="latex-author">{ctx.author}</div>'
        text = re.sub(r'\\maketitle.*', lambda m: f'\n\n{block}\n\n', text)

    text = re.sub(
        r'\\begin\{abstract\}([\s\S]*?)\\end\{abstract\}',
        lambda m: f'\n\n%%%ABSTRACT_START%%%\n\n{m.group(1).strip()}\n\n%%%ABSTRACT_END%%%\n\n',
        text,
        flags=re.IGNORECASE,
    )

    def keywords(match):
        content = match.group(1).replace('\\sep', ', ').strip()
        return f'\n\n%%%KEYWORDS_START%%%{content}%%%KEYWORDS_END%%%\n\n'

    return re.sub(r'\\begin\{keywords?\}([\s\S]*?)\\end\{keywords?\}', keywords, text,
                  flags=re.IGNORECASE)


SECTION_RE = re.compile(
    r'\\(section|subsection|subsubsection)(\*?)\{(%s)\}\s*(\\label\{([^}]+)\})?\s*' % NESTED
)
SECTION_MARKERS = {'section': '##', 'subsection': '###', 'subsubsection': '####'}


def sections(text, ctx):
    def replace(match):
        anchor = ''
        if match.group(5):
            anchor = f'<span id="{escape_attr(match.group(5))}" class="latex-label-anchor"></span>'
        return f'\n{SECTION_MARKERS[match.group(1)]} {match.group(3).strip()} {anchor}\n'

    return SECTION_RE.sub(replace, text)


def floats(text, ctx):
    def replace(match):
        env, star, body = match.groups()
        return (f'\n\n<div class="latex-float-placeholder" data-env="{env}">'
                f'<strong class="float-name">[{env.upper()}{star}]</strong>'
                f'<pre class="float-content">{html.escape(body).strip()}</pre>'
                '</div>\n\n')

    return re.sub(r'\\begin\{(figure|table|algorithm)(\*?)\}([\s\S]*?)\\end\{\1\2\}',
                  replace, text, flags=re.IGNORECASE)


LIST_TOKEN_RE = re.compile(
    r'(\\begin\{(?:itemize|enumerate)\})'
    r'|(\\end\{(?:itemize|enumerate)\})'
    r'|(\\item(?![a-zA-Z])(?:\[(.*?)\])?[ \t]*)'
)


def lists(text, ctx):
    stack = []

    def replace(match):
        if match.group(1):
            stack.append('ul' if 'itemize' in match.group(1) else 'ol')
            return '\n\n'
        if match.group(2):
            if stack:
                stack.pop()
            return '\n\n'
        indent = '    ' * max(0, len(stack) - 1)
        if match.group(4) is not None:
            return f'\n{indent}- **{match.group(4)}** '
        kind = stack[-1] if stack else 'ul'
        return f'\n{indent}{"-" if kind == "ul" else "1."} '

    return LIST_TOKEN_RE.sub(replace, text)


def refs_and_labels(text, ctx):
    def label(match):
        name = escape_attr(match.group(1))
        return (f'<span id="{name}" class="latex-label-anchor" data-label="{name}" '
                'style="position:relative; top:-50px; visibility:hidden;"></span>')

    def reference(match):
        kind = match.group(1)
        links = []
        for key in (k.strip() for k in match.group(2).split(',')):
            display = key.split(':')[-1] if ':' in key else key
            links.append(f'<a href="#{escape_attr(key)}" class="latex-link latex-{kind}">'
                         f'{display or key}</a>')
        joined = ', '.join(links)
        if kind in ('citep', 'eqref'):
            return f'<span class="latex-{kind}-container">{joined}</span>'
        return joined

    text = re.sub(r'\\label\{([^}]+)\}', label, text)
    return re.sub(r'\\(ref|eqref|cite|citep|citet)\{([^}]+)\}', reference, text)


STYLE_TAGS = {
    'textbf': ('<strong>', '</strong>'),
    'bf': ('<strong>', '</strong>'),
    'textit': ('<em>', '</em>'),
    'it': ('<em>', '</em>'),
    'texttt': ('<code>', '</code>'),
    'tt': ('<code>', '</code>'),
    'textsf': ('<span style="font-family: sans-serif;">', '</span>'),
    'sf': ('<span style="font-family: sans-serif;">', '</span>'),
    'textrm': ('<span style="font-family: serif;">', '</span>'),
    'rm': ('<span style="font-family: serif;">', '</span>'),
    'underline': ('<u>', '</u>'),
}


def text_styles(text, ctx):
    def command(match):
        start, end = STYLE_TAGS[match.group(1)]
        return apply_style_to_list(start, end, match.group(2))

    def color(match):
        return apply_style_to_list(f'<span style="color: {match.group(1)}">', '</span>',
                                   match.group(2))

    text = re.sub(r'\\(textbf|textit|texttt|textsf|textrm|underline)\{(%s)\}' % NESTED,
                  command, text)
    text = re.sub(r'\{\\(bf|it|tt|sf|rm)\s+(%s)\}' % NESTED, command, text)
    text = re.sub(r'\{\\color\{([a-zA-Z0-9]+)\}\s*(%s)\}' % NESTED, color, text)
    return re.sub(r'\\color\{([a-zA-Z0-9]+)\}\{([^}]*)\}', color, text)


DEFAULT_RULES = (
    Rule('escaped_chars', 10, escaped_chars),
    Rule('romannumeral', 20, roman_numerals),
    Rule('display_math', 30, display_math),
    Rule('inline_math', 40, inline_math),
    Rule('theorems_and_proofs', 50, theorems_and_proofs),
    Rule('maketitle_and_abstract', 60, maketitle_and_abstract),
    Rule('sections', 70, sections),
    Rule('floats', 80, floats),
    Rule('lists', 90, lists),
    Rule('refs_and_labels', 100, refs_and_labels),
    Rule('text_styles', 110, text_styles),
)


class LaTeXProcessor:
    def __init__(self, rules=DEFAULT_RULES):
        self._rules: List[Rule] = list(rules)
        self._sort_rules()

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def register_rule(self, rule: Rule):
        """Add a rule, replacing any existing rule with the same name"""
        for index, existing in enumerate(self._rules):
            if existing.name == rule.name:
                self._rules[index] = rule
                break
        else:
            self._rules.append(rule)
        self._sort_rules()
        logger.debug(f"Registered rule {rule.name} (priority {rule.priority})")

    def load_rules_file(self, path) -> int:
        """
        Import a Python file exposing RULES and register each entry
        Entries may be Rule instances or (name, priority, apply) tuples
        """
        path = Path(path).resolve()
        spec = importlib.util.spec_from_file_location(f'texpreview_rules_{path.stem}', path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load rules from {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        rules = getattr(module, 'RULES', ())
        for entry in rules:
            self.register_rule(Rule(*entry))
        logger.info(f"Loaded {len(rules)} rules from {path}")
        return len(rules)

    def _sort_rules(self):
        self._rules.sort(key=lambda rule: rule.priority)

    def process(self, text: str, title: Optional[str] = None,
                author: Optional[str] = None) -> TransformResult:
        """
        Run every rule over a block, then restore protected fragments
        The flag tells callers whether post_process_html() is needed
        """
        ctx = TransformContext(title, author)
        for rule in self._rules:
            text = rule.apply(text, ctx)
        text = ctx.restore(text)
        return TransformResult(text, bool(SPECIAL_BLOCK_RE.search(text)))


def post_process_html(html_text: str) -> str:
    """Turn abstract and keywords markers left in rendered HTML into containers"""
    abstract_open = '<div class="latex-abstract"><span class="latex-abstract-title">Abstract</span>'
    html_text = re.sub(r'<p>\s*%%%ABSTRACT_START%%%\s*</p>', abstract_open, html_text)
    html_text = html_text.replace('%%%ABSTRACT_START%%%', abstract_open)
    html_text = re.sub(r'<p>\s*%%%ABSTRACT_END%%%\s*</p>', '</div>', html_text)
    html_text = html_text.replace('%%%ABSTRACT_END%%%', '</div>')

    return re.sub(
        r'<p>\s*%%%KEYWORDS_START%%%([\s\S]*?)%%%KEYWORDS_END%%%\s*</p>',
        lambda m: f'<div class="latex-keywords"><strong>Keywords:</strong> {m.group(1)}</div>',
        html_text,
    )
