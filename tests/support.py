"""
Shared fixtures: a throwaway PKI on disk and a background mTLS server.
"""
import shutil
import tempfile
import threading
from pathlib import Path

from mtls_demo.config import TLSSettings
from mtls_demo.pki import make_certs
from mtls_demo.pki.credentials import CredentialPaths, load_credentials
from mtls_demo.server.mtls_server import listen


class PKITestCase:
    """Mixin generating one PKI per test class (2048-bit keys to keep it quick)."""

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.certs_dir = Path(tempfile.mkdtemp())
        cls.pki = make_certs.generate(cls.certs_dir, ca_key_size=2048, leaf_key_size=2048)
        cls.server_paths = CredentialPaths.for_server(cls.certs_dir)
        cls.client_paths = CredentialPaths.for_client(cls.certs_dir)
        cls.foreign_paths = CredentialPaths(
            key=cls.certs_dir / "foreign-client.key",
            certificate=cls.certs_dir / "foreign-client.crt",
            trust_anchor=cls.certs_dir / "ca-chain.crt",
        )

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.certs_dir, ignore_errors=True)
        super().tearDownClass()


class RunningServer:
    """Context manager serving the mTLS server on 127.0.0.1 from a daemon thread."""

    def __init__(self, server_paths, settings=None):
        self.credentials = load_credentials(server_paths)
        self.settings = settings or TLSSettings()
        self.server = None
        self.thread = None

    def __enter__(self):
        self.server = listen(("127.0.0.1", 0), self.credentials, self.settings)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        return self

    def __exit__(self, *exc_info):
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)

    @property
    def url(self):
        return f"https://127.0.0.1:{self.server.port}/"
