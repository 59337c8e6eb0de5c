# backend/retaildb/serve.py
import os
from typing import Dict

import uvicorn

_TRUTHY = {"1", "true", "yes", "on"}

_SSL_ENV = {
    "ssl_certfile": "SSL_CERTFILE",
    "ssl_keyfile": "SSL_KEYFILE",
    "ssl_ca_certs": "SSL_CA_CERTS",
    "ssl_keyfile_password": "SSL_KEYFILE_PASSWORD",
}


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _ssl_options() -> Dict[str, str]:
    """TLS settings for uvicorn; empty when none of the SSL_* variables are set."""
    return {option: os.environ[env] for option, env in _SSL_ENV.items() if os.getenv(env)}


def main() -> None:
    uvicorn.run(
        "retaildb.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=_env_flag("RELOAD"),
        log_level=os.getenv("LOG_LEVEL", "info"),
        proxy_headers=True,
        forwarded_allow_ips=os.getenv("FORWARDED_ALLOW_IPS", "*"),
        **_ssl_options(),
    )


if __name__ == "__main__":
    main()
