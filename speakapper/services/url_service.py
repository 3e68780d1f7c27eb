"""Validation of user-supplied video URLs before they reach the downloader."""

import ipaddress
import socket
from urllib.parse import urlparse

MAX_URL_LENGTH = 2048


def is_restricted_ip(value):
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast or ip.is_reserved


def is_blocked_hostname(hostname):
    host = str(hostname or '').strip().lower()
    if not host:
        return True
    if host in {'localhost', 'localhost.localdomain'}:
        return True
    if host.endswith('.local') or host.endswith('.internal'):
        return True
    return is_restricted_ip(host)


def validate_video_url(raw_url, *, resolve_func=socket.getaddrinfo):
    """Return ``(url, '')`` when the URL may be fetched, else ``('', error)``."""
    url = str(raw_url or '').strip()
    if not url:
        return '', 'url is required'
    if len(url) > MAX_URL_LENGTH:
        return '', 'Video URL is too long.'
    try:
        parsed = urlparse(url)
    except ValueError:
        return '', 'Video URL is invalid.'
    if parsed.scheme.lower() not in {'http', 'https'}:
        return '', 'Only HTTP(S) video URLs are supported.'
    if parsed.username or parsed.password:
        return '', 'Video URL credentials are not allowed.'
    host = (parsed.hostname or '').strip().lower()
    if not host:
        return '', 'Video URL host is missing.'
    if is_blocked_hostname(host):
        return '', 'This video host is not allowed.'
    try:
        resolved = resolve_func(host, 443, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return '', 'Could not resolve the video URL host.'
    for _family, _kind, _proto, _canonname, sockaddr in resolved:
        if is_restricted_ip(sockaddr[0]):
            return '', 'This video host resolves to a restricted network address.'
    return url, ''
