"""
Root conftest for the GitHub stats API test suite.

Sets environment variables BEFORE any ghstats module is imported, so that
``ghstats.config.Settings`` never picks up a developer's real token or
writes the cache into the working tree.
"""

import os
import tempfile

# Must be set before any import of ghstats.config triggers Settings()
os.environ.setdefault("GITHUB_USERNAME", "octocat")
os.environ.setdefault("GITHUB_TOKEN", "")
os.environ.setdefault("CACHE_DIR", os.path.join(tempfile.gettempdir(), "ghstats-test-cache"))
