"""Remote code execution service package.

This package is the backend of a browser code editor: it runs submitted
programs in several languages inside throwaway sandboxes and stores the
multi-file projects (workspaces) edited in the browser.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``errors`` – the error taxonomy shared by all components.
* ``languages`` – the registry of supported languages and their commands.
* ``submissions`` – submission records and their status lifecycle.
* ``submission_queue`` – admission control and dispatch to executor slots.
* ``executor`` – sandboxed execution under resource and time limits.
* ``reporter`` – retention of finished results for polling.
* ``storage`` – pluggable backends for persisting workspaces.
* ``workspaces`` – CRUD over workspace files.
* ``models`` – Pydantic models defining request and response schemas.
* ``api`` – FastAPI application exposing HTTP endpoints.
"""
