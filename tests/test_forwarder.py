import socket

import pytest

from blocklist_proxy.forwarder import ForwardResult, HttpForwarder

from conftest import recv_all, unused_port


@pytest.fixture
def client_pair():
    client_end, proxy_end = socket.socketpair()
    yield client_end, proxy_end
    client_end.close()
    proxy_end.close()


def test_forward_relays_response_and_rewrites_host(upstream_http, client_pair):
    client_end, proxy_end = client_pair
    port = upstream_http.server_address[1]
    forwarder = HttpForwarder(connect_timeout=5)

    result = forwarder.forward(
        url=f"http://127.0.0.1:{port}/hello?x=1",
        method="GET",
        version="HTTP/1.1",
        headers={"Host": "somewhere.else", "Proxy-Connection": "keep-alive"},
        body=b"",
        client_socket=proxy_end,
    )
    proxy_end.close()
    response = recv_all(client_end)

    assert result.ok
    assert result.response_started
    assert result.bytes_relayed == len(response)
    assert response.startswith(b"HTTP/1.0 200 OK\r\n")
    assert f"X-Seen-Host: 127.0.0.1:{port}\r\n".encode() in response
    assert b"X-Seen-Connection: close\r\n" in response
    assert b"X-Seen-Proxy-Connection: \r\n" in response
    assert response.endswith(b"hello from upstream /hello?x=1")


def test_forward_https_skips_certificate_checks(upstream_https, client_pair):
    client_end, proxy_end = client_pair
    port = upstream_https.server_address[1]

    result = HttpForwarder(connect_timeout=5).forward(
        url=f"https://127.0.0.1:{port}/x",
        method="GET",
        version="HTTP/1.1",
        headers={"Host": "127.0.0.1"},
        body=b"",
        client_socket=proxy_end,
    )
    proxy_end.close()
    response = recv_all(client_end)

    assert result.ok, result.error
    assert result.response_started
    assert response.startswith(b"HTTP/1.0 200 OK\r\n")
    assert f"X-Seen-Host: 127.0.0.1:{port}\r\n".encode() in response
    assert response.endswith(b"hello from upstream /x")


def test_forward_sends_request_body(upstream_http, client_pair):
    client_end, proxy_end = client_pair
    port = upstream_http.server_address[1]

    result = HttpForwarder(connect_timeout=5).forward(
        url=f"http://127.0.0.1:{port}/echo",
        method="POST",
        version="HTTP/1.1",
        headers={"Content-Length": "7"},
        body=b"payload",
        client_socket=proxy_end,
    )
    proxy_end.close()

    assert result.ok
    assert recv_all(client_end).endswith(b"\r\n\r\npayload")


def test_forward_connection_refused_is_a_result(client_pair):
    _, proxy_end = client_pair

    result = HttpForwarder(connect_timeout=5).forward(
        url=f"http://127.0.0.1:{unused_port()}/",
        method="GET",
        version="HTTP/1.1",
        headers={},
        body=b"",
        client_socket=proxy_end,
    )

    assert not result.ok
    assert isinstance(result.error, OSError)
    assert not result.response_started
    assert result.bytes_relayed == 0


def test_forward_without_host_is_a_result(client_pair):
    _, proxy_end = client_pair

    result = HttpForwarder().forward("http:///nohost", "GET", "HTTP/1.1", {}, b"", proxy_end)

    assert isinstance(result.error, ValueError)
    assert not result.response_started


def test_client_disconnect_is_not_an_error(upstream_http, client_pair):
    client_end, proxy_end = client_pair
    client_end.close()
    port = upstream_http.server_address[1]

    result = HttpForwarder(connect_timeout=5).forward(
        f"http://127.0.0.1:{port}/", "GET", "HTTP/1.1", {}, b"", proxy_end
    )

    assert result.ok
    assert result.client_gone


def test_forward_result_defaults():
    result = ForwardResult()
    assert result.ok
    assert not result.response_started
