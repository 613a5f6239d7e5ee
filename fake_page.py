"""
伪装页面 - 对非 WebSocket 请求返回 nginx 默认欢迎页

让探测请求看到的只是一台刚装好的 nginx，而不是中继服务。
"""

from http import HTTPStatus

NGINX_WELCOME_PAGE = """<!DOCTYPE html>
<html>
<head>
<title>Welcome to nginx!</title>
<style>
    body {
        width: 35em;
        margin: 0 auto;
        font-family: Tahoma, Verdana, Arial, sans-serif;
    }
</style>
</head>
<body>
<h1>Welcome to nginx!</h1>
<p>If you see this page, the nginx web server is successfully installed and
working. Further configuration is required.</p>

<p>For online documentation and support please refer to
<a href="http://nginx.org/">nginx.org</a>.<br/>
Commercial support is available at
<a href="http://nginx.com/">nginx.com</a>.</p>

<p><em>Thank you for using nginx.</em></p>
</body>
</html>
"""


def get_nginx_welcome_page() -> str:
    return NGINX_WELCOME_PAGE


def decoy_response(connection, status: HTTPStatus = HTTPStatus.OK):
    """
    构造伪装响应

    Args:
        connection: websockets 服务端连接（握手阶段）
        status: HTTP 状态码

    Returns:
        websockets.http11.Response: text/html 响应
    """
    response = connection.respond(status, get_nginx_welcome_page())
    del response.headers['Content-Type']
    response.headers['Content-Type'] = 'text/html; charset=utf-8'
    return response
