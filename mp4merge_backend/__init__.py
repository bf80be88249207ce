"""Backend for the MP4 merge service.

FastAPI route handlers in server.py stay thin; the work lives here:
- per-request workspace lifecycle, exactly-once cleanup, orphan sweep
- ffmpeg normalization and stream-copy concatenation
- streamed delivery of merged.mp4 with disconnect handling

Client-supplied filenames are only used to order inputs. They never become
filesystem paths, and ffmpeg diagnostics are logged, never returned.
"""
