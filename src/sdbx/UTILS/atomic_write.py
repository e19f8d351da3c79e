"""
Write-then-rename file helpers.
"""
import os
import tempfile


def atomic_write_text(path: str, content: str) -> None:
    """
    Writes ``content`` to ``path`` through a temporary file in the same
    directory, so readers see either the old or the new file, never a
    partial one.

    :param path: Destination file path. Parent directories are created.
    :param content: Text to write.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.basename(path))
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
