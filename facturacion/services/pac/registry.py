# facturacion/services/pac/registry.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from zeep import Client
from zeep.transports import Transport

logger = logging.getLogger("facturacion.pac")


def build_session(ssl_verify: bool = True, retries: int = 3, backoff: float = 1) -> requests.Session:
    """
    Session HTTP para zeep.

    Solo se reintentan GET (descarga de WSDL/XSD). Los POST de timbrado no se
    reintentan aquí: el reintento lo decide el cliente Finkok.
    """
    session = requests.Session()
    session.verify = ssl_verify
    session.headers.update({"User-Agent": "FacturacionCFDI/1.0 (Python/Zeep)"})

    retry = Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class ClientRegistry:
    """
    Registro de clientes SOAP por URL de WSDL.

    El WSDL se descarga una sola vez por proceso; después el registro solo se lee.
    """

    def __init__(
        self,
        timeout: int = 30,
        ssl_verify: bool = True,
        factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.timeout = timeout
        self.ssl_verify = ssl_verify
        self._factory = factory or self._build_client
        self._lock = threading.Lock()
        self._wsdl_locks: Dict[str, threading.Lock] = {}
        self._clients: Dict[str, Any] = {}

    def _build_client(self, wsdl: str) -> Client:
        transport = Transport(
            session=build_session(self.ssl_verify),
            timeout=self.timeout,
            operation_timeout=self.timeout,
        )
        logger.info(
            "Inicializando cliente SOAP [WSDL=%s, verify_ssl=%s, timeout=%s]",
            wsdl,
            self.ssl_verify,
            self.timeout,
        )
        return Client(wsdl=wsdl, transport=transport)

    def get(self, wsdl: str) -> Any:
        client = self._clients.get(wsdl)
        if client is not None:
            return client

        # Un candado por WSDL: la descarga de uno no bloquea a los demás
        with self._lock:
            wsdl_lock = self._wsdl_locks.setdefault(wsdl, threading.Lock())
        with wsdl_lock:
            client = self._clients.get(wsdl)
            if client is None:
                client = self._factory(wsdl)
                with self._lock:
                    self._clients[wsdl] = client
            return client

    def register(self, wsdl: str, client: Any) -> None:
        with self._lock:
            self._clients[wsdl] = client

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()
