"""Static lookup tables used when parsing labels and assembling routers.

These mirror the middlewares and rule ids defined for the deployment's file
provider (``routes.yml``); a name that is missing here simply gets no special
treatment.
"""

from __future__ import annotations

DEFAULT_PRIORITY = 200
DEFAULT_ENTRYPOINTS = ("web",)

RETRY_MIDDLEWARE = "retry-cold-start@file"
SERVICE_AUTH_HEADER = "X-Serverless-Authorization"
INTERNAL_SERVICE = "api@internal"
ADMIN_PRIORITY = 1000

# rule_id -> router rule expression
RULES: dict[str, str] = {
    "home-index-root": "PathPrefix(`/`)",
    "home-index-signin": "Path(`/sign-in`) || Path(`/sign-up`)",
    "home-seo": "PathPrefix(`/api/seo`)",
    "labs-analytics": "PathPrefix(`/api/analytics`)",
    "lab1": "PathPrefix(`/lab1`)",
    "lab1-static": "PathPrefix(`/lab1/css/`) || PathPrefix(`/lab1/js/`) || PathPrefix(`/lab1/images/`) || PathPrefix(`/lab1/img/`) || PathPrefix(`/lab1/static/`) || PathPrefix(`/lab1/assets/`)",
    "lab1-c2": "PathPrefix(`/lab1/c2`)",
    "lab2": "PathPrefix(`/lab2`)",
    "lab2-static": "PathPrefix(`/lab2/css/`) || PathPrefix(`/lab2/js/`) || PathPrefix(`/lab2/images/`) || PathPrefix(`/lab2/img/`) || PathPrefix(`/lab2/static/`) || PathPrefix(`/lab2/assets/`)",
    "lab2-c2": "PathPrefix(`/lab2/c2`)",
    "lab3": "PathPrefix(`/lab3`)",
    "lab3-static": "PathPrefix(`/lab3/css/`) || PathPrefix(`/lab3/js/`) || PathPrefix(`/lab3/images/`) || PathPrefix(`/lab3/img/`) || PathPrefix(`/lab3/static/`) || PathPrefix(`/lab3/assets/`)",
    "lab3-extension": "PathPrefix(`/lab3/extension`)",
}

# router name -> default priority (higher is matched first)
#   1    catch-all
#   100  sign-in / sign-up
#   200  main app routes
#   250  static assets
#   300  sub-routes
#   500  API routes
#   1000 proxy internals
PRIORITIES: dict[str, int] = {
    "home-index": 1,
    "home-index-root": 1,
    "home-index-signin": 100,
    "home-seo": 500,
    "labs-analytics": 500,
    "lab1": 200,
    "lab1-static": 250,
    "lab1-c2": 300,
    "lab2": 200,
    "lab2-main": 200,
    "lab2-static": 250,
    "lab2-c2": 300,
    "lab3": 200,
    "lab3-main": 200,
    "lab3-static": 250,
    "lab3-extension": 300,
}

# router name -> strip-prefix middleware defined by the file provider
STRIP_PREFIX: dict[str, str] = {
    "lab1": "strip-lab1-prefix@file",
    "lab1-static": "strip-lab1-prefix@file",
    "lab1-c2": "strip-lab1-c2-prefix@file",
    "lab2": "strip-lab2-prefix@file",
    "lab2-main": "strip-lab2-prefix@file",
    "lab2-static": "strip-lab2-prefix@file",
    "lab2-c2": "strip-lab2-c2-prefix@file",
    "lab3": "strip-lab3-prefix@file",
    "lab3-main": "strip-lab3-prefix@file",
    "lab3-static": "strip-lab3-prefix@file",
    "lab3-extension": "strip-lab3-extension-prefix@file",
    "home-seo": "strip-seo-prefix@file",
    "labs-analytics": "strip-analytics-prefix@file",
}

# Backend name suffixes that mark a deployment environment, not a different service.
ENV_SUFFIXES = ("-stg", "-prd", "-dev", "-staging", "-production")


def default_priority(router_name: str) -> int:
    return PRIORITIES.get(router_name, DEFAULT_PRIORITY)


def strip_prefix_middleware(router_name: str) -> str | None:
    """Return the strip-prefix middleware for a router, or None.

    Exact names win; otherwise the longest table key ``k`` such that the router
    is named ``k-...``. Sub-routes (``-c2``, ``-extension``) only ever match
    exactly since they strip a longer prefix.
    """
    if router_name in STRIP_PREFIX:
        return STRIP_PREFIX[router_name]
    if "-c2" in router_name or "-extension" in router_name:
        return None
    for prefix in sorted(STRIP_PREFIX, key=len, reverse=True):
        if router_name.startswith(prefix + "-"):
            return STRIP_PREFIX[prefix]
    return None
