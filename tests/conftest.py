from __future__ import annotations

import os
import tempfile


# The API module reads its configuration at import time.
_base = tempfile.mkdtemp(prefix="coderun-tests-")
os.environ.setdefault("CODERUN_STORAGE_PATH", os.path.join(_base, "workspaces"))
os.environ.setdefault("CODERUN_SANDBOX_DIR", os.path.join(_base, "sandboxes"))
os.environ.setdefault("CODERUN_API_KEY", "")
