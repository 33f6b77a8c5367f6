from html import escape

from .schemas import UploadedLink

_HEAD = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>DP File Host</title>
</head>
<body>
"""

_TAIL = """
</body>
</html>"""


def _anchor(url: str) -> str:
    url = escape(url)
    return f'<a href="{url}">{url}</a>'


def upload_form(max_files: int, max_request_mb: int) -> str:
    return (
        _HEAD
        + f"""    <form action="/fh" method="post" enctype="multipart/form-data">
        <input type="file" name="file" multiple>
        <input type="submit" value="Upload">
    </form>
    <p>Up to {max_files} files, {max_request_mb} MB per upload. Files are deleted after one hour.</p>"""
        + _TAIL
    )


def upload_result(links: list[UploadedLink]) -> str:
    rows = []
    for link in links:
        row = f"{escape(link.original_name)}: {_anchor(link.url)}"
        if link.descriptor_url:
            row += f", jad: {_anchor(link.descriptor_url)}"
        rows.append(row)
    return _HEAD + "    <code>\n    " + "<br/>".join(rows) + "\n    </code>" + _TAIL
