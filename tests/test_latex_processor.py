from __future__ import annotations

from latex_processor import (
    NO_INDENT_MARKER,
    LaTeXProcessor,
    Rule,
    TransformContext,
    post_process_html,
)
from latex_utils import apply_style_to_list, to_roman


def render(text: str, **kwargs) -> str:
    return LaTeXProcessor().process(text, **kwargs).text


def test_escaped_symbols_become_entities() -> None:
    text = render(r"Cost \$5 and 50\% of \#1 \& co")

    assert "&#36;5" in text
    assert "50&#37;" in text
    assert "&#35;1" in text
    assert "&amp; co" in text
    assert "%%%PROTECTED" not in text


def test_roman_numerals_and_noindent() -> None:
    text = render(r"\noindent Part \Rmnum{4}, \rmnum{9} and \romannumeral 14")

    assert "Part IV, ix and xiv" in text
    assert text.startswith(NO_INDENT_MARKER)


def test_to_roman_subtractive_notation() -> None:
    assert to_roman(1994, uppercase=True) == "MCMXCIV"
    assert to_roman(49) == "xlix"


def test_equation_becomes_display_math_with_hidden_label() -> None:
    text = render(r"\begin{equation}\label{eq:one} x = 1 \end{equation}")

    assert "$$\nx = 1\n$$" in text
    assert '<span id="eq:one"' in text
    assert "display:none" in text
    assert "\\label" not in text


def test_align_and_gather_are_wrapped() -> None:
    aligned = render(r"\begin{align*}a &= b\end{align*}")
    gathered = render(r"\begin{gather}a \\ b\end{gather}")
    alignat = render(r"\begin{alignat}{2}a &= b\end{alignat}")

    assert "\\begin{aligned}\na &= b\n\\end{aligned}" in aligned
    assert "\\begin{gathered}\na \\\\ b\n\\end{gathered}" in gathered
    assert "\\begin{aligned}\na &= b\n\\end{aligned}" in alignat


def test_bracket_and_dollar_display_math_are_normalized() -> None:
    assert "$$\ny\n$$" in render(r"\[ y \]")
    assert "$$\nz\n$$" in render("$$z$$")


def test_text_after_display_math_gets_no_indent_marker() -> None:
    assert NO_INDENT_MARKER in render("$$x$$ and more")
    assert NO_INDENT_MARKER not in render("$$x$$")
    assert NO_INDENT_MARKER not in render("$$x$$\n\nNew paragraph")


def test_math_is_shielded_from_text_styles() -> None:
    text = render(r"$\textbf{x}$ and \textbf{y}")

    assert "$\\textbf{x}$" in text
    assert "<strong>y</strong>" in text


def test_escaped_dollar_inside_math_is_restored() -> None:
    text = render(r"$$ \$5 $$")

    assert "&#36;5" in text
    assert "%%%PROTECTED" not in text


def test_theorem_environment_gets_heading() -> None:
    text = render(r"\begin{Theorem}[Main] Body text. \end{Theorem}")
    lemma = render(r"\begin{lemma}Small.\end{lemma}")

    assert ('<strong class="latex-theorem-header">Theorem</strong>&nbsp;(Main).</span>'
            "&nbsp; Body text.") in text
    assert '<strong class="latex-theorem-header">Lemma</strong>.</span>' in lemma


def test_proof_lead_in_and_qed() -> None:
    text = render(r"\begin{proof}[Sketch] Trivial. \end{proof}")

    assert "**Proof (Sketch).**" in text
    assert NO_INDENT_MARKER in text
    assert '<span style="float:right;">QED</span>' in text
    assert "**Proof.**" in render(r"\begin{proof}x")


def test_maketitle_uses_current_title_and_author() -> None:
    text = render("\\maketitle[meta:T|A]", title="T", author="A")

    assert '<h1 class="latex-title">T</h1><div class="latex-author">A</div>' in text
    assert "[meta" not in text


def test_maketitle_without_metadata_is_removed() -> None:
    text = render("\\maketitle")

    assert "\\maketitle" not in text
    assert "latex-title" not in text


def test_abstract_and_keywords_request_post_processing() -> None:
    processor = LaTeXProcessor()
    result = processor.process(
        "\\begin{abstract}\nSummary.\n\\end{abstract}\n"
        "\\begin{keywords}alpha \\sep beta\\end{keywords}"
    )

    assert result.needs_post_process
    assert "%%%ABSTRACT_START%%%\n\nSummary.\n\n%%%ABSTRACT_END%%%" in result.text
    assert "%%%KEYWORDS_START%%%alpha ,  beta%%%KEYWORDS_END%%%" in result.text
    assert not processor.process("Plain paragraph.").needs_post_process


def test_post_process_html_builds_containers() -> None:
    html = post_process_html(
        "<p>%%%ABSTRACT_START%%%</p>\n<p>Body</p>\n<p>%%%ABSTRACT_END%%%</p>\n"
        "<p>%%%KEYWORDS_START%%%a, b%%%KEYWORDS_END%%%</p>"
    )

    assert html == (
        '<div class="latex-abstract"><span class="latex-abstract-title">Abstract</span>\n'
        "<p>Body</p>\n</div>\n"
        '<div class="latex-keywords"><strong>Keywords:</strong> a, b</div>'
    )


def test_section_headings_and_anchor() -> None:
    text = render("\\section{Intro}\\label{sec:intro}\nText")

    assert '\n## Intro <span id="sec:intro" class="latex-label-anchor"></span>\nText' in text
    assert "\n### A {b} c \n" in render("\\subsection*{A {b} c}")
    assert "\n#### Deep \n" in render("\\subsubsection{Deep}")


def test_float_is_escaped_placeholder() -> None:
    text = render("\\begin{figure*}\n\\caption{a<b>}\n\\end{figure*}")

    assert '<div class="latex-float-placeholder" data-env="figure">' in text
    assert '<strong class="float-name">[FIGURE*]</strong>' in text
    assert "a&lt;b&gt;" in text
    assert text.startswith("\n\n") and text.endswith("\n\n")


def test_lists_become_markdown_items() -> None:
    text = render("\\begin{itemize}\n\\item one\n\\item two\n\\end{itemize}")
    nested = render(
        "\\begin{enumerate}\\item a\\begin{itemize}\\item b\\end{itemize}\\end{enumerate}"
    )

    assert "\n- one" in text
    assert "\n- two" in text
    assert "\n1. a" in nested
    assert "\n    - b" in nested
    assert "- **Key** value" in render("\\begin{itemize}\\item[Key] value\\end{itemize}")


def test_item_prefixed_commands_are_untouched() -> None:
    assert "\\itemsep" in render("\\setlength{\\itemsep}{0pt}")


def test_labels_become_hidden_anchors() -> None:
    text = render("Here\\label{x}")

    assert 'id="x"' in text
    assert "visibility:hidden" in text
    assert "top:-50px" in text


def test_references_link_to_labels() -> None:
    citep = render("\\citep{a:one, b}")
    ref = render("\\ref{sec:intro}")

    assert citep == (
        '<span class="latex-citep-container">'
        '<a href="#a:one" class="latex-link latex-citep">one</a>, '
        '<a href="#b" class="latex-link latex-citep">b</a></span>'
    )
    assert ref == '<a href="#sec:intro" class="latex-link latex-ref">intro</a>'
    assert 'class="latex-eqref-container"' in render("\\eqref{eq:one}")


def test_text_styles() -> None:
    text = render(r"\textbf{bold} \textit{it} {\bf b2} {\it i2} {\color{red} warm} \texttt{code}")

    assert "<strong>bold</strong>" in text
    assert "<em>it</em>" in text
    assert "<strong>b2</strong>" in text
    assert "<em>i2</em>" in text
    assert '<span style="color: red">warm</span>' in text
    assert "<code>code</code>" in text


def test_style_wrapping_keeps_list_markers_visible() -> None:
    assert apply_style_to_list("<strong>", "</strong>", "- item one\n- item two") == (
        "- <strong>item one</strong>\n- <strong>item two</strong>"
    )
    assert render("\\textbf{- item one\n- item two}") == (
        "- <strong>item one</strong>\n- <strong>item two</strong>"
    )


def test_style_wrapping_passes_blank_lines_through() -> None:
    assert apply_style_to_list("<em>", "</em>", "- a\n\n  1. b\nplain") == (
        "- <em>a</em>\n\n  1. <em>b</em>\n<em>plain</em>"
    )
    assert apply_style_to_list("<em>", "</em>", "a\nb") == "<em>a\nb</em>"


def test_unknown_and_malformed_commands_pass_through() -> None:
    text = render("\\unknowncmd{x} \\textbf{unclosed")

    assert "\\unknowncmd{x}" in text
    assert "\\textbf{unclosed" in text


def test_register_rule_orders_by_priority_and_replaces_by_name() -> None:
    processor = LaTeXProcessor()
    count = len(processor.rules)

    processor.register_rule(Rule("test_rule", 1, lambda text, ctx: text.replace("test", "SUCCESS")))
    assert processor.rules[0].name == "test_rule"
    assert processor.process("a test").text == "a SUCCESS"

    processor.register_rule(Rule("test_rule", 1, lambda text, ctx: text))
    assert len(processor.rules) == count + 1
    assert processor.process("a test").text == "a test"


def test_custom_rule_can_protect_content() -> None:
    processor = LaTeXProcessor()
    processor.register_rule(
        Rule("keep_xcancel", 35, lambda text, ctx: text.replace("\\xcancel{a}", ctx.protect_inline("KEPT")))
    )

    assert processor.process("\\xcancel{a} \\textbf{b}").text == "KEPT <strong>b</strong>"


def test_load_rules_file(tmp_path) -> None:
    rules_file = tmp_path / "my_rules.py"
    rules_file.write_text('RULES = [("shout", 115, lambda text, ctx: text.upper())]\n')
    processor = LaTeXProcessor()

    assert processor.load_rules_file(rules_file) == 1
    assert processor.process("\\textbf{abc}").text == "<STRONG>ABC</STRONG>"


def test_context_restores_nested_tokens() -> None:
    ctx = TransformContext()
    inner = ctx.protect_inline("inner")
    outer = ctx.protect_inline(f"[{inner}]")

    assert ctx.restore(f"x {outer} y") == "x [inner] y"
    assert ctx.restore("%%%PROTECTED_BLOCK_99%%%") == "%%%PROTECTED_BLOCK_99%%%"
