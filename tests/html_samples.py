"""HTML pages shared by crawler tests."""


def article_html(title="Understanding Crawl Budgets", paragraphs=6, extra_body=""):
    """A small article page with enough prose to pass the quality gate."""
    body = "\n".join(
        f"<p>Paragraph {i} explains how a polite crawler spaces its requests to the same origin. "
        f"It also describes why robots rules are cached for a while before they are fetched again.</p>"
        for i in range(paragraphs)
    )
    return f"""<html>
<head><title>{title} | Example Docs</title></head>
<body>
<header><nav><a href="/">Home</a></nav></header>
<main>
<h1>{title}</h1>
{body}
{extra_body}
</main>
<footer>Copyright Example</footer>
</body>
</html>"""


def links_html(hrefs):
    """A page with one anchor per href inside the article body."""
    anchors = "\n".join(f'<li><a href="{href}">Link {i}</a></li>' for i, href in enumerate(hrefs))
    return article_html(extra_body=f"<ul>{anchors}</ul>")
