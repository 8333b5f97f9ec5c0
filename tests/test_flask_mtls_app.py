"""
Tests for the authorization decision and the HTTP surface, without sockets.
"""
import unittest

from mtls_demo.server.flask_mtls_app import (
    SERVER_ERROR_BODY,
    SESSION_ENVIRON_KEY,
    SUCCESS_BODY,
    create_app,
)
from mtls_demo.server.session import SessionDescriptor

AUTHORIZED = SessionDescriptor(
    protocol="TLSv1.3",
    cipher="TLS_AES_256_GCM_SHA384",
    authorized=True,
    subject_cn="client",
    issuer_cn="MyIntermediateCA",
)

UNAUTHORIZED = SessionDescriptor(
    protocol="TLSv1.3",
    cipher="TLS_AES_256_GCM_SHA384",
    authorized=False,
    authorization_error="unable to get local issuer certificate",
    subject_cn="foreign-client",
    issuer_cn="Foreign Root CA",
)


class TestFlaskMTLSApp(unittest.TestCase):

    def setUp(self):
        self.app = create_app()
        self.client = self.app.test_client()

    def _get(self, session, path="/", method="GET"):
        return self.client.open(path, method=method, environ_base={SESSION_ENVIRON_KEY: session})

    def test_authorized_gets_fixed_body(self):
        response = self._get(AUTHORIZED)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_data(as_text=True), SUCCESS_BODY)
        self.assertEqual(SUCCESS_BODY, "Hello, secure world with intermediate CA!")

    def test_any_path_and_method_reaches_handler(self):
        for path, method in [("/anything", "GET"), ("/a/b/c?x=1", "POST"), ("/", "DELETE"), ("/x", "PUT")]:
            with self.subTest(path=path, method=method):
                response = self._get(AUTHORIZED, path, method)
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.get_data(as_text=True), SUCCESS_BODY)

    def test_trace_and_extension_methods_reach_handler(self):
        for method in ("TRACE", "CONNECT", "PROPFIND", "PURGE"):
            with self.subTest(method=method):
                response = self._get(AUTHORIZED, "/any/path", method)
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.get_data(as_text=True), SUCCESS_BODY)

    def test_head_is_answered(self):
        self.assertEqual(self._get(AUTHORIZED, "/", "HEAD").status_code, 200)

    def test_unauthorized_gets_401_with_error(self):
        response = self._get(UNAUTHORIZED)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(
            response.get_data(as_text=True),
            "Client certificate not authorized: unable to get local issuer certificate",
        )

    def test_unauthorized_never_reaches_handler(self):
        for path, method in [("/", "GET"), ("/secret", "POST"), ("/x", "OPTIONS")]:
            with self.subTest(path=path, method=method):
                self.assertEqual(self._get(UNAUTHORIZED, path, method).status_code, 401)

    def test_missing_session_is_server_error(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_data(as_text=True), SERVER_ERROR_BODY)

    def test_wrong_session_type_is_server_error(self):
        response = self.client.get("/", environ_base={SESSION_ENVIRON_KEY: {"authorized": True}})
        self.assertEqual(response.status_code, 500)

    def test_enforcement_can_be_disabled(self):
        client = create_app(reject_unauthorized=False).test_client()
        response = client.get("/", environ_base={SESSION_ENVIRON_KEY: UNAUTHORIZED})
        self.assertEqual(response.status_code, 200)


if __name__ == "__main__":
    unittest.main()
