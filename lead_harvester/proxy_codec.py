from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlencode

from .errors import InvalidProxyUriError
from .models import ProxyProtocol, ProxyRecord

TUNNEL_SCHEMES = ("vless", "vmess", "ss", "trojan")
STANDARD_SCHEMES = {
    "socks5": ProxyProtocol.SOCKS5,
    "socks4": ProxyProtocol.SOCKS4,
    "http": ProxyProtocol.HTTP,
    "https": ProxyProtocol.HTTPS,
}

# vless/trojan query key -> record attribute
QUERY_FIELDS = {
    "type": "transport_type",
    "security": "security",
    "sni": "sni",
    "path": "path",
    "host": "ws_host",
    "alpn": "alpn",
    "fp": "fingerprint",
    "pbk": "public_key",
    "sid": "short_id",
    "encryption": "encryption",
    "flow": "flow",
}

_LEADING_COMMENT_MARKERS = re.compile(r"^[#\s]+")
_PORT_DIGITS = re.compile(r"^(\d+)")


def split_scheme(uri: str) -> Tuple[str, str]:
    if "://" not in uri:
        return "", uri
    scheme, rest = uri.split("://", 1)
    return scheme.lower(), rest


def clean_share_line(raw: Optional[str]) -> str:
    """Normalize a pasted share line.

    Tunnel URIs often carry a space separated trailer such as
    ``ss://...@h:p # [ Comment ] 🔒``; the trailer becomes the fragment. Plain
    proxies keep only the text before the first space.
    """
    if raw is None or not raw.strip():
        raise InvalidProxyUriError(raw or "", "", "proxy URL cannot be empty")

    url = raw.strip()
    scheme, _ = split_scheme(url)
    if scheme in TUNNEL_SCHEMES:
        space_idx = _first_space_outside_fragment(url)
        if space_idx > 0:
            main_part = url[:space_idx].strip()
            comment = url[space_idx:].strip()
            if "#" not in main_part and comment:
                comment = _LEADING_COMMENT_MARKERS.sub("", comment).strip()
                url = f"{main_part}#{quote(comment, safe='')}" if comment else main_part
            else:
                url = main_part
    else:
        space_idx = url.find(" ")
        if space_idx > 0:
            url = url[:space_idx]
    return url.strip()


def _first_space_outside_fragment(url: str) -> int:
    hash_idx = url.find("#")
    space_idx = url.find(" ")
    if space_idx < 0:
        return -1
    if hash_idx < 0 or space_idx < hash_idx:
        return space_idx
    return -1


def decode_base64(value: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding."""
    cleaned = "".join(value.split())
    cleaned = cleaned.replace("-", "+").replace("_", "/")
    cleaned += "=" * (-len(cleaned) % 4)
    return base64.b64decode(cleaned, validate=True)


def encode_base64(value: str, *, urlsafe: bool = False) -> str:
    raw = value.encode("utf-8")
    if urlsafe:
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return base64.b64encode(raw).decode("ascii")


def _split_fragment(content: str) -> Tuple[str, Optional[str]]:
    if "#" not in content:
        return content, None
    content, fragment = content.split("#", 1)
    return content, unquote(fragment).strip() or None


def _split_query(content: str) -> Tuple[str, str]:
    if "?" not in content:
        return content, ""
    content, query = content.split("?", 1)
    return content, query


def _split_host_port(value: str, uri: str, scheme: str) -> Tuple[str, int]:
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        if end < 0 or value[end + 1:end + 2] != ":":
            raise InvalidProxyUriError(uri, scheme, "malformed IPv6 authority")
        host, port_text = value[1:end], value[end + 2:]
    else:
        if ":" not in value:
            raise InvalidProxyUriError(uri, scheme, "missing port")
        host, port_text = value.rsplit(":", 1)
    return host.strip(), _parse_port(port_text, uri, scheme)


def _parse_port(port_text: str, uri: str, scheme: str, *, lenient: bool = False) -> int:
    text = port_text.strip()
    if lenient:
        match = _PORT_DIGITS.match(text)
        text = match.group(1) if match else ""
    try:
        port = int(text)
    except ValueError:
        raise InvalidProxyUriError(uri, scheme, f"invalid port '{port_text}'") from None
    if not 0 < port < 65536:
        raise InvalidProxyUriError(uri, scheme, f"port {port} out of range")
    return port


def _format_host(host: str) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def _apply_query(proxy: ProxyRecord, query: str) -> None:
    if not query:
        return
    for param in query.split("&"):
        if "=" not in param:
            continue
        key, value = param.split("=", 1)
        attribute = QUERY_FIELDS.get(key)
        if attribute:
            setattr(proxy, attribute, unquote(value))


def _query_string(proxy: ProxyRecord, skip: Tuple[str, ...] = ()) -> str:
    params: List[Tuple[str, str]] = []
    for key, attribute in QUERY_FIELDS.items():
        if key in skip:
            continue
        value = getattr(proxy, attribute)
        if value not in (None, ""):
            params.append((key, str(value)))
    return urlencode(params, safe=",/")


def _fragment(proxy: ProxyRecord) -> str:
    if not proxy.description:
        return ""
    return "#" + quote(proxy.description, safe="")


def _stream_settings(proxy: ProxyRecord) -> Dict[str, Any]:
    network = proxy.transport_type or "tcp"
    stream: Dict[str, Any] = {"network": network}

    if network == "ws":
        ws_settings: Dict[str, Any] = {}
        if proxy.path:
            ws_settings["path"] = proxy.path
        if proxy.ws_host:
            ws_settings["headers"] = {"Host": proxy.ws_host}
        stream["wsSettings"] = ws_settings
    elif network == "grpc":
        grpc_settings: Dict[str, Any] = {}
        if proxy.path:
            grpc_settings["serviceName"] = proxy.path
        stream["grpcSettings"] = grpc_settings

    security = proxy.security or ""
    if security == "tls":
        stream["security"] = "tls"
        tls_settings: Dict[str, Any] = {}
        if proxy.sni:
            tls_settings["serverName"] = proxy.sni
        if proxy.alpn:
            tls_settings["alpn"] = [item.strip() for item in proxy.alpn.split(",") if item.strip()]
        if proxy.fingerprint:
            tls_settings["fingerprint"] = proxy.fingerprint
        stream["tlsSettings"] = tls_settings
    elif security == "reality":
        stream["security"] = "reality"
        reality_settings: Dict[str, Any] = {}
        if proxy.sni:
            reality_settings["serverName"] = proxy.sni
        if proxy.public_key:
            reality_settings["publicKey"] = proxy.public_key
        if proxy.short_id:
            reality_settings["shortId"] = proxy.short_id
        if proxy.fingerprint:
            reality_settings["fingerprint"] = proxy.fingerprint
        stream["realitySettings"] = reality_settings
    return stream


class ProxyCodec:
    """Share-URI codec and tunnel outbound builder for one protocol family."""

    schemes: Tuple[str, ...] = ()

    def decode(self, uri: str) -> ProxyRecord:
        raise NotImplementedError

    def encode(self, proxy: ProxyRecord) -> str:
        raise NotImplementedError

    def build_outbound(self, proxy: ProxyRecord) -> Dict[str, Any]:
        raise InvalidProxyUriError(
            proxy.original_url or proxy.address_key,
            proxy.protocol.scheme,
            "protocol does not run through a tunnel",
        )

    def _outbound(self, protocol: str, settings: Dict[str, Any], proxy: ProxyRecord) -> Dict[str, Any]:
        return {
            "tag": "proxy",
            "protocol": protocol,
            "settings": settings,
            "streamSettings": _stream_settings(proxy),
        }


class StandardCodec(ProxyCodec):
    schemes = ("socks5", "socks4", "http", "https", "")

    def decode(self, uri: str) -> ProxyRecord:
        scheme, rest = split_scheme(uri)
        protocol = STANDARD_SCHEMES.get(scheme)
        if protocol is None:
            if scheme:
                raise InvalidProxyUriError(uri, scheme, "unsupported scheme")
            protocol = ProxyProtocol.SOCKS5

        rest = rest.split("/", 1)[0]
        username: Optional[str] = None
        password: Optional[str] = None
        if "@" in rest:
            auth, rest = rest.rsplit("@", 1)
            if ":" in auth:
                username, password = auth.split(":", 1)
                username, password = unquote(username), unquote(password)
            else:
                username = unquote(auth)

        host, port = _split_host_port(rest, uri, scheme or "socks5")
        if not host:
            raise InvalidProxyUriError(uri, scheme or "socks5", "missing host")
        return ProxyRecord(
            protocol=protocol,
            host=host,
            port=port,
            username=username or None,
            password=password or None,
        )

    def encode(self, proxy: ProxyRecord) -> str:
        credentials = ""
        if proxy.username:
            credentials = quote(proxy.username, safe="")
            if proxy.password:
                credentials += ":" + quote(proxy.password, safe="")
            credentials += "@"
        return f"{proxy.protocol.scheme}://{credentials}{_format_host(proxy.host)}:{proxy.port}"


class VlessCodec(ProxyCodec):
    schemes = ("vless",)

    def decode(self, uri: str) -> ProxyRecord:
        _, content = split_scheme(uri)
        content, description = _split_fragment(content)
        content, query = _split_query(content)
        if "@" not in content:
            raise InvalidProxyUriError(uri, "vless", "missing uuid@host")
        user_id, authority = content.split("@", 1)
        if not user_id:
            raise InvalidProxyUriError(uri, "vless", "missing uuid")
        host, port = _split_host_port(authority.rstrip("/"), uri, "vless")
        proxy = ProxyRecord(
            protocol=ProxyProtocol.VLESS,
            host=host,
            port=port,
            uuid=unquote(user_id),
            description=description,
            original_url=uri,
        )
        _apply_query(proxy, query)
        return proxy

    def encode(self, proxy: ProxyRecord) -> str:
        query = _query_string(proxy)
        suffix = f"?{query}" if query else ""
        return (
            f"vless://{quote(proxy.uuid or '', safe='')}@{_format_host(proxy.host)}:{proxy.port}"
            f"{suffix}{_fragment(proxy)}"
        )

    def build_outbound(self, proxy: ProxyRecord) -> Dict[str, Any]:
        settings = {
            "vnext": [
                {
                    "address": proxy.host,
                    "port": proxy.port,
                    "users": [
                        {
                            "id": proxy.uuid,
                            "encryption": proxy.encryption or "none",
                            "flow": proxy.flow or "",
                        }
                    ],
                }
            ]
        }
        return self._outbound("vless", settings, proxy)


class VmessCodec(ProxyCodec):
    schemes = ("vmess",)

    def decode(self, uri: str) -> ProxyRecord:
        _, content = split_scheme(uri)
        content, fragment = _split_fragment(content)
        try:
            document = json.loads(decode_base64(content).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise InvalidProxyUriError(uri, "vmess", f"payload is not base64 JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise InvalidProxyUriError(uri, "vmess", "payload is not a JSON object")

        host = str(document.get("add") or "").strip()
        user_id = str(document.get("id") or "").strip()
        if not host or not user_id:
            raise InvalidProxyUriError(uri, "vmess", "missing 'add' or 'id'")
        port = _parse_port(str(document.get("port", "")), uri, "vmess")
        try:
            alter_id = int(document.get("aid") or 0)
        except (TypeError, ValueError):
            alter_id = 0

        return ProxyRecord(
            protocol=ProxyProtocol.VMESS,
            host=host,
            port=port,
            uuid=user_id,
            alter_id=alter_id,
            transport_type=str(document.get("net") or "tcp"),
            security=str(document.get("tls") or "") or None,
            path=str(document.get("path") or "") or None,
            ws_host=str(document.get("host") or "") or None,
            sni=str(document.get("sni") or "") or None,
            alpn=str(document.get("alpn") or "") or None,
            fingerprint=str(document.get("fp") or "") or None,
            encryption=str(document.get("scy") or "") or None,
            description=str(document.get("ps") or "") or fragment,
            original_url=uri,
        )

    def encode(self, proxy: ProxyRecord) -> str:
        document: Dict[str, Any] = {
            "v": "2",
            "ps": proxy.description or "",
            "add": proxy.host,
            "port": str(proxy.port),
            "id": proxy.uuid or "",
            "aid": str(proxy.alter_id or 0),
            "net": proxy.transport_type or "tcp",
            "type": "none",
            "host": proxy.ws_host or "",
            "path": proxy.path or "",
            "tls": proxy.security or "",
            "sni": proxy.sni or "",
        }
        if proxy.alpn:
            document["alpn"] = proxy.alpn
        if proxy.fingerprint:
            document["fp"] = proxy.fingerprint
        if proxy.encryption:
            document["scy"] = proxy.encryption
        payload = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        return "vmess://" + encode_base64(payload)

    def build_outbound(self, proxy: ProxyRecord) -> Dict[str, Any]:
        settings = {
            "vnext": [
                {
                    "address": proxy.host,
                    "port": proxy.port,
                    "users": [
                        {
                            "id": proxy.uuid,
                            "alterId": proxy.alter_id if proxy.alter_id is not None else 0,
                            "security": proxy.encryption or "auto",
                        }
                    ],
                }
            ]
        }
        return self._outbound("vmess", settings, proxy)


class ShadowsocksCodec(ProxyCodec):
    schemes = ("ss",)

    def decode(self, uri: str) -> ProxyRecord:
        _, content = split_scheme(uri)
        content, description = _split_fragment(content)
        content = content.split("?", 1)[0].split("/?", 1)[0]

        if "@" in content:
            # SIP002: userinfo@host:port
            userinfo, authority = content.rsplit("@", 1)
            method, password = self._decode_userinfo(userinfo, uri)
            if ":" not in authority:
                raise InvalidProxyUriError(uri, "ss", "missing port")
            host, port_text = authority.rstrip("/").rsplit(":", 1)
            host = host.strip().strip("[]")
            port = _parse_port(port_text, uri, "ss", lenient=True)
        else:
            # legacy: base64(method:password@host:port)
            try:
                decoded = decode_base64(content).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
                raise InvalidProxyUriError(uri, "ss", f"payload is not base64: {exc}") from exc
            if ":" not in decoded or "@" not in decoded:
                raise InvalidProxyUriError(uri, "ss", "expected method:password@host:port")
            method, rest = decoded.split(":", 1)
            password, authority = rest.rsplit("@", 1)
            host, port = _split_host_port(authority, uri, "ss")

        if not host or not method:
            raise InvalidProxyUriError(uri, "ss", "missing host or method")
        return ProxyRecord(
            protocol=ProxyProtocol.SHADOWSOCKS,
            host=host,
            port=port,
            encryption=method,
            password=password,
            description=description,
            original_url=uri,
        )

    @staticmethod
    def _decode_userinfo(userinfo: str, uri: str) -> Tuple[str, str]:
        plain = unquote(userinfo)
        try:
            decoded = decode_base64(plain).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            decoded = ""
        if ":" in decoded:
            method, password = decoded.split(":", 1)
            return method, password
        # SIP002 allows a percent-encoded plain userinfo for AEAD-2022 ciphers
        if ":" in plain:
            method, password = plain.split(":", 1)
            return method, password
        raise InvalidProxyUriError(uri, "ss", "userinfo is not method:password")

    def encode(self, proxy: ProxyRecord) -> str:
        userinfo = encode_base64(f"{proxy.encryption or ''}:{proxy.password or ''}", urlsafe=True)
        return f"ss://{userinfo}@{_format_host(proxy.host)}:{proxy.port}{_fragment(proxy)}"

    def build_outbound(self, proxy: ProxyRecord) -> Dict[str, Any]:
        settings = {
            "servers": [
                {
                    "address": proxy.host,
                    "port": proxy.port,
                    "method": proxy.encryption,
                    "password": proxy.password,
                }
            ]
        }
        return self._outbound("shadowsocks", settings, proxy)


class TrojanCodec(ProxyCodec):
    schemes = ("trojan",)

    def decode(self, uri: str) -> ProxyRecord:
        _, content = split_scheme(uri)
        content, description = _split_fragment(content)
        content, query = _split_query(content)
        if "@" not in content:
            raise InvalidProxyUriError(uri, "trojan", "missing password@host")
        password, authority = content.rsplit("@", 1)
        if not password:
            raise InvalidProxyUriError(uri, "trojan", "missing password")
        host, port = _split_host_port(authority.rstrip("/"), uri, "trojan")
        proxy = ProxyRecord(
            protocol=ProxyProtocol.TROJAN,
            host=host,
            port=port,
            password=unquote(password),
            description=description,
            original_url=uri,
        )
        _apply_query(proxy, query)
        return proxy

    def encode(self, proxy: ProxyRecord) -> str:
        query = _query_string(proxy, skip=("encryption",))
        suffix = f"?{query}" if query else ""
        return (
            f"trojan://{quote(proxy.password or '', safe='')}@{_format_host(proxy.host)}:{proxy.port}"
            f"{suffix}{_fragment(proxy)}"
        )

    def build_outbound(self, proxy: ProxyRecord) -> Dict[str, Any]:
        settings = {
            "servers": [
                {
                    "address": proxy.host,
                    "port": proxy.port,
                    "password": proxy.password,
                }
            ]
        }
        return self._outbound("trojan", settings, proxy)


_STANDARD = StandardCodec()

CODECS: Dict[str, ProxyCodec] = {}
for _codec in (_STANDARD, VlessCodec(), VmessCodec(), ShadowsocksCodec(), TrojanCodec()):
    for _scheme in _codec.schemes:
        CODECS[_scheme] = _codec

PROTOCOL_CODECS: Dict[ProxyProtocol, ProxyCodec] = {
    ProxyProtocol.SOCKS4: _STANDARD,
    ProxyProtocol.SOCKS5: _STANDARD,
    ProxyProtocol.HTTP: _STANDARD,
    ProxyProtocol.HTTPS: _STANDARD,
    ProxyProtocol.VLESS: CODECS["vless"],
    ProxyProtocol.VMESS: CODECS["vmess"],
    ProxyProtocol.SHADOWSOCKS: CODECS["ss"],
    ProxyProtocol.TROJAN: CODECS["trojan"],
}


def decode(uri: str) -> ProxyRecord:
    """Parse a proxy URI or share line into a new, untested record."""
    url = clean_share_line(uri)
    scheme, _ = split_scheme(url)
    codec = CODECS.get(scheme)
    if codec is None:
        raise InvalidProxyUriError(url, scheme, "unsupported scheme")
    try:
        return codec.decode(url)
    except (ValueError, IndexError) as exc:
        raise InvalidProxyUriError(url, scheme, str(exc)) from exc


def encode(proxy: ProxyRecord) -> str:
    return PROTOCOL_CODECS[proxy.protocol].encode(proxy)


def build_outbound(proxy: ProxyRecord) -> Dict[str, Any]:
    return PROTOCOL_CODECS[proxy.protocol].build_outbound(proxy)


__all__ = [
    "CODECS",
    "PROTOCOL_CODECS",
    "ProxyCodec",
    "ShadowsocksCodec",
    "StandardCodec",
    "TrojanCodec",
    "VlessCodec",
    "VmessCodec",
    "build_outbound",
    "clean_share_line",
    "decode",
    "decode_base64",
    "encode",
    "encode_base64",
]
