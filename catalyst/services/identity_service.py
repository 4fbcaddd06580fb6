"""Identity service - Supabase Auth (GoTrue) over its REST API.

Supabase owns user accounts and issues access tokens; this client covers
the handful of calls the API needs:
- resolving an access token to a user (every authenticated request)
- email/password sign-up and sign-in
- admin recovery-link generation and user deletion (service key)
"""

import logging

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class IdentityError(Exception):
    """The identity provider rejected a request."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class SupabaseIdentityClient:
    """Minimal GoTrue client.

    Args:
        url:         Project URL, e.g. https://xyz.supabase.co
        service_key: service_role key (admin endpoints)
        anon_key:    public anon key for user-scoped calls; defaults to
                     the service key
    """

    def __init__(self, url, service_key, anon_key=None, session=None):
        self.base_url = f"{(url or '').rstrip('/')}/auth/v1"
        self.service_key = service_key
        self.anon_key = anon_key or service_key
        self.http = session or requests.Session()

    def _headers(self, bearer=None, admin=False):
        key = self.service_key if admin else self.anon_key
        return {
            "apikey": key,
            "Authorization": f"Bearer {bearer or key}",
            "Content-Type": "application/json",
        }

    def _request(self, method, path, bearer=None, admin=False, **kwargs):
        resp = self.http.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers(bearer=bearer, admin=admin),
            timeout=REQUEST_TIMEOUT,
            **kwargs,
        )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            message = (
                body.get("msg")
                or body.get("error_description")
                or body.get("message")
                or resp.text
            )
            raise IdentityError(message, status_code=resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def get_user(self, access_token):
        """Return the user dict for a valid access token, else None."""
        try:
            return self._request("GET", "/user", bearer=access_token)
        except IdentityError as e:
            logger.info(f"Access token rejected by identity provider: {e}")
            return None
        except requests.RequestException as e:
            logger.error(f"Identity provider unreachable: {e}")
            return None

    def sign_up(self, email, password, metadata=None):
        """Create a user. Returns the user dict."""
        data = self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        # Depending on email-confirmation settings the user is either the
        # body itself or nested under "user".
        return data.get("user") or data

    def sign_in(self, email, password):
        """Password grant. Returns the session dict (access_token, user, ...)."""
        return self._request(
            "POST",
            "/token?grant_type=password",
            json={"email": email, "password": password},
        )

    def generate_recovery_link(self, email, redirect_to=None):
        """Return a password-recovery action link for email."""
        payload = {"type": "recovery", "email": email}
        if redirect_to:
            payload["redirect_to"] = redirect_to
        data = self._request("POST", "/admin/generate_link", admin=True, json=payload)
        link = data.get("action_link") or (data.get("properties") or {}).get("action_link")
        if not link:
            raise IdentityError("Failed to generate recovery link")
        return link

    def delete_user(self, user_id):
        self._request("DELETE", f"/admin/users/{user_id}", admin=True)
        logger.info(f"Deleted identity user {user_id}")
