# harvester/identity.py
import random
import threading

ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,"
    "image/webp,*/*;q=0.8"
)
SEC_CH_UA = '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'


class IdentityPool:
    """
    Rotating browser identities.

    User agents are handed out round-robin from a cursor so consecutive
    attempts never present the same agent twice in a row (pools of one
    aside). Referers and the optional headers are randomised per call.
    """

    def __init__(self, user_agents, referers=None, accept_languages=None, rng=None):
        if not user_agents:
            raise ValueError("IdentityPool needs at least one user agent")
        self.user_agents = list(user_agents)
        self.referers = list(referers or [""])
        self.accept_languages = list(accept_languages or ["en-US,en;q=0.9"])
        self._rng = rng or random.Random()
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_profile(cls, profile, rng=None):
        return cls(
            profile.user_agents,
            referers=profile.referers,
            accept_languages=profile.accept_languages,
            rng=rng,
        )

    def next_user_agent(self):
        with self._lock:
            user_agent = self.user_agents[self._cursor]
            self._cursor = (self._cursor + 1) % len(self.user_agents)
        return user_agent

    def random_referer(self):
        """A search-engine referer, or None when the pool picks 'no referer'."""
        return self._rng.choice(self.referers) or None

    def headers(self, first_request=True, user_agent=None):
        """
        Header set resembling a top-level browser navigation.

        ``first_request`` controls Sec-Fetch-Site: a fresh navigation is
        'none', follow-up attempts look like same-origin clicks.
        """
        headers = {
            "User-Agent": user_agent or self.next_user_agent(),
            "Accept": ACCEPT,
            "Accept-Language": self._rng.choice(self.accept_languages),
            "Accept-Encoding": "gzip, deflate",
            "Cache-Control": "max-age=0" if self._rng.random() > 0.5 else "no-cache",
            "Sec-Ch-Ua": SEC_CH_UA,
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": '"Windows"',
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none" if first_request else "same-origin",
            "Sec-Fetch-User": "?1",
            "Upgrade-Insecure-Requests": "1",
        }
        referer = self.random_referer()
        if referer:
            headers["Referer"] = referer
        if self._rng.random() > 0.7:
            headers["DNT"] = "1"
        if self._rng.random() > 0.8:
            headers["Pragma"] = "no-cache"
        return headers
