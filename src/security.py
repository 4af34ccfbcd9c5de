from urllib.parse import urlparse
import aiohttp

from src.shopify.tokens import USER_AGENT


# accepts only relative paths or absolute URLs on our own host, so the post
# login redirect can't be pointed at another site (open redirect).
def is_safe_redirect(url: str, host: str) -> bool:
    if not url or url.startswith("//") or "\\" in url:
        return False

    parts = urlparse(url)
    if not parts.scheme and not parts.netloc:
        return url.startswith("/")

    return (
        parts.scheme in ["http", "https"]
        and parts.netloc == host
        and parts.username is None
        and parts.password is None
    )


class HardenedHttp:
    def get_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(20, connect=5),
            headers={
                # the provider rejects requests without one with a 403
                "User-Agent": USER_AGENT,
            },
        )


hardened_http = HardenedHttp()
