from crawl_orchestrator.ingest.etl import extract

HTML = """
<html>
  <head><title> Engineering   Blog </title><style>body {}</style></head>
  <body>
    <script>console.log("x")</script>
    <h1>Scaling Queues</h1>
    <h2>Background</h2>
    <p>Queues   decouple producers.</p>
    <p>   </p>
    <ul><li>one</li><li>two</li></ul>
    <ol><li>first</li></ol>
    <table>
      <tr><th>Name</th><th>Value</th></tr>
      <tr><td>depth</td><td>2</td></tr>
    </table>
    <a href="/posts/1">First post</a>
    <a href="/empty"></a>
  </body>
</html>
"""


def test_extract_structured_content():
    content = extract(HTML, "https://example.com/")
    structured = content.structured
    assert structured.title == "Engineering Blog"
    assert [(h.level, h.content) for h in structured.headings] == [
        (1, "Scaling Queues"),
        (2, "Background"),
    ]
    assert structured.paragraphs == ["Queues decouple producers."]
    assert [(block.list_type, block.items) for block in structured.lists] == [
        ("unordered", ["one", "two"]),
        ("ordered", ["first"]),
    ]
    assert structured.tables[0].headers == ["Name", "Value"]
    assert structured.tables[0].rows == [["depth", "2"]]
    assert [(link.href, link.text) for link in structured.links] == [
        ("/posts/1", "First post")
    ]
    assert "console.log" not in content.raw_text
    assert "Queues decouple producers." in content.raw_text
    assert not content.is_empty


def test_extract_empty_page():
    content = extract("<html><body><script>x()</script></body></html>", "https://example.com/")
    assert content.raw_text == ""
    assert content.is_empty
    assert content.to_dict()["structured"]["links"] == []
