import pytest

from oh_my_telegram.integrations.telegram.rendering import (
    MarkdownRenderer,
    parse_blocks,
    render_inline,
    render_markdown,
    wrap_code,
)


def _utf8(text: str) -> int:
    return len(text.encode("utf-8"))


def test_render_inline_escapes_html() -> None:
    assert render_inline("a < b & <b>") == "a &lt; b &amp; &lt;b&gt;"


def test_render_inline_code_bold_and_links() -> None:
    rendered = render_inline(
        "run `ls <dir>` then **stop** see [docs](https://example.com/a?b=1&c=2)"
    )
    assert "<code>ls &lt;dir&gt;</code>" in rendered
    assert "<b>stop</b>" in rendered
    assert '<a href="https://example.com/a?b=1&amp;c=2">docs</a>' in rendered


def test_render_inline_ignores_non_http_links() -> None:
    rendered = render_inline("[x](javascript:alert(1))")
    assert "<a" not in rendered


def test_wrap_code_drops_unsafe_language() -> None:
    assert wrap_code("x\n", "python") == '<pre><code class="language-python">x</code></pre>'
    assert wrap_code("x", 'py" onclick="1') == "<pre><code>x</code></pre>"


def test_parse_blocks_unterminated_fence_runs_to_end() -> None:
    blocks = parse_blocks("intro\n```sh\necho hi\n")
    assert [block.kind for block in blocks] == ["text", "code"]
    assert blocks[1].content == "echo hi\n"
    assert blocks[1].closing == ""


def test_render_short_message_is_single_chunk() -> None:
    chunks = render_markdown("Hello **world**\n\n```python\nprint(1)\n```\n")
    texts = [chunk.text for chunk in chunks if not chunk.blank]
    assert texts[0] == "Hello <b>world</b>\n\n"
    assert texts[1] == '<pre><code class="language-python">print(1)</code></pre>'


def test_long_text_splits_within_budget_and_preserves_raw() -> None:
    markdown = "\n".join(f"line {index} with <some> & words" for index in range(80))
    renderer = MarkdownRenderer(budget=200)
    chunks = renderer.render(markdown)
    assert len(chunks) > 1
    assert all(_utf8(chunk.text) <= 200 for chunk in chunks)
    assert "".join(chunk.raw for chunk in chunks) == markdown


def test_single_oversized_line_is_split() -> None:
    markdown = "x" * 450
    chunks = MarkdownRenderer(budget=100).render(markdown)
    assert all(_utf8(chunk.text) <= 100 for chunk in chunks)
    assert "".join(chunk.raw for chunk in chunks) == markdown


def test_default_budget_splits_long_line_into_three_chunks() -> None:
    markdown = "a" * 9000
    chunks = render_markdown(markdown)
    assert len(chunks) == 3
    assert all(_utf8(chunk.text) <= 4000 for chunk in chunks)
    assert "".join(chunk.raw for chunk in chunks) == markdown


def test_long_code_block_every_chunk_is_closed() -> None:
    body = "".join(f"print({index})\n" for index in range(120))
    markdown = f"before\n```python\n{body}```\nafter\n"
    chunks = MarkdownRenderer(budget=160).render(markdown)
    code_chunks = [chunk for chunk in chunks if chunk.text.startswith("<pre>")]
    assert len(code_chunks) > 1
    for chunk in code_chunks:
        assert chunk.text.startswith('<pre><code class="language-python">')
        assert chunk.text.endswith("</code></pre>")
        assert _utf8(chunk.text) <= 160
    assert "".join(chunk.raw for chunk in chunks) == markdown


def test_budget_counts_utf8_bytes() -> None:
    markdown = "é" * 120
    chunks = MarkdownRenderer(budget=50).render(markdown)
    assert all(_utf8(chunk.text) <= 50 for chunk in chunks)
    assert "".join(chunk.raw for chunk in chunks) == markdown


def test_whitespace_only_code_block_is_blank() -> None:
    chunks = render_markdown("```\n   \n```\n")
    assert len(chunks) == 1
    assert chunks[0].blank
    assert chunks[0].raw == "```\n   \n```\n"


def test_non_positive_budget_rejected() -> None:
    with pytest.raises(ValueError):
        MarkdownRenderer(budget=0)
