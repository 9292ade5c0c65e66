"""
Expose the FastAPI application instance.

Importing this module creates the FastAPI application and registers all
routes.  The service can be run with Uvicorn directly or through the
package entry point:

```sh
python -m coderun.api
```
"""

from .main import app

__all__ = ["app"]
