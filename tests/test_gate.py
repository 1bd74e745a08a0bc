import pytest
from conftest import make_settings, sign_in, state_from_url

from webapp_auth_bff.errors import RefreshError
from webapp_auth_bff.gate import AccessPolicy, RouteRule, RouteTable, error_response
from webapp_auth_bff.pkce import decode_state


@pytest.fixture
def routes(settings):
    return RouteTable.from_settings(settings)


@pytest.mark.parametrize(
    "path, policy",
    [
        ("/", AccessPolicy.PROTECTED_REDIRECT),
        ("/index.html", AccessPolicy.PROTECTED_REDIRECT),
        ("/users/id", AccessPolicy.PROTECTED_REDIRECT),
        ("/v2", AccessPolicy.PROTECTED_API),
        ("/v2/profile", AccessPolicy.PROTECTED_API),
        ("/v2/deep/nested/path", AccessPolicy.PROTECTED_API),
        ("/v20", AccessPolicy.UNPROTECTED),
        ("/auth/signin", AccessPolicy.PUBLIC),
        ("/auth/redirect", AccessPolicy.PUBLIC),
        ("/auth/signout", AccessPolicy.PUBLIC),
        ("/auth/error", AccessPolicy.PUBLIC),
        ("/health", AccessPolicy.PUBLIC),
        ("/favicon.ico", AccessPolicy.PUBLIC),
        ("/static/style.css", AccessPolicy.PUBLIC),
        ("/somewhere/else", AccessPolicy.UNPROTECTED),
    ],
)
def test_default_route_table(routes, path, policy):
    assert routes.classify(path) is policy


def test_public_rules_win_over_protected():
    table = RouteTable([
        RouteRule("/v2/*", AccessPolicy.PROTECTED_API),
        RouteRule("/v2/status", AccessPolicy.PUBLIC),
    ])
    assert table.classify("/v2/status") is AccessPolicy.PUBLIC
    assert table.classify("/v2/profile") is AccessPolicy.PROTECTED_API


def test_glob_patterns():
    rule = RouteRule("/reports/*.pdf", AccessPolicy.PROTECTED_REDIRECT)
    assert rule.matches("/reports/q1.pdf")
    assert not rule.matches("/reports/q1.csv")


def test_index_html_can_be_made_public():
    table = RouteTable.from_settings(make_settings(PUBLIC_PATHS="/index.html,/static/*"))
    assert table.classify("/index.html") is AccessPolicy.PUBLIC
    assert table.classify("/") is AccessPolicy.PROTECTED_REDIRECT


def test_error_body_shape():
    response = error_response(RefreshError())
    assert response.status_code == 401
    assert response.body == b'{"status":401,"name":"RefreshError","message":"Your session has expired. Please sign in again."}'


# --- HTTP behaviour ---

def test_anonymous_api_request_gets_json_401(client, provider):
    response = client.get("/v2/profile")
    assert response.status_code == 401
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {
        "status": 401,
        "name": "NotAuthenticatedError",
        "message": "Authentication required.",
    }
    assert provider.refreshes == []


def test_anonymous_browser_request_redirects_and_remembers_target(client):
    response = client.get("/users/id?tab=claims")
    assert response.status_code == 302
    assert response.headers["location"] == "/auth/signin"

    signin = client.get("/auth/signin")
    assert decode_state(state_from_url(signin.headers["location"]))["redirectTo"] == "/users/id?tab=claims"


def test_unprotected_path_passes_through(client, provider):
    response = client.get("/somewhere/else")
    assert response.status_code == 404
    assert provider.refreshes == []


def test_authenticated_request_reaches_route(client, provider):
    sign_in(client)
    response = client.get("/v2/profile")
    assert response.status_code == 200
    assert provider.refreshes == []
