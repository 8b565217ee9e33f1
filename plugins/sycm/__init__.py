"""Live analytics plugin – metric sources, chart tables and the page observer.

* :data:`SOURCES` / :func:`default_registry` – what is captured from which endpoint
* :data:`TABLES` – how each raw table becomes canonical series
* :class:`PageObserver` – browser session feeding responses into the pipeline
"""

from .observer import PageObserver  # noqa: F401
from .sources import SOURCES, default_registry, page_urls  # noqa: F401
from .tables import RANK_TREND_BUCKET, TABLES  # noqa: F401
