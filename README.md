# gimlet

gimlet is a small HTTP web framework built on the standard library only. An
`Engine` holds the routes and the global middleware; every request runs
through a chain of handlers that share one `Context`, which carries the
request data, per-request values, collected errors and the response.

## Building an application

```python
from gimlet.engine import new

app = new()


def log_requests(c):
    c.next()


def hello(c):
    c.string(200, "hello %s", c.param("name"))


app.use(log_requests)
app.get("/hello/:name", hello)
app.run(":8080")
```

`run()` serves with the standard library's threading HTTP server until it is
stopped. Without an address it uses the `PORT` environment variable, or
`:8080`.

`new()` in `gimlet.engine` returns a bare engine. `default()` returns one
with two middleware already attached: one that logs status, method and path
through the `logging` module, and one that turns an exception raised by a
later handler into a 500 response.

Routes are added with `Engine.handle(method, path, *handlers)` or the
shortcuts `Engine.get` and `Engine.post`. Paths may hold named parameters
(`/users/:id`) and a trailing catch-all (`/files/*path`). Registering the
same method and path twice raises `ValueError`. `Engine.routes()` lists the
registered routes as `RouteInfo` entries. Handlers for unmatched paths and
disallowed methods are set with `Engine.no_route` and `Engine.no_method`;
without them the engine answers `404 page not found` or, when
`handle_method_not_allowed` is set, `405 method not allowed`.

Other engine settings are plain attributes: `redirect_trailing_slash`
(on by default), `redirect_fixed_path`, `remove_extra_slash`,
`use_raw_path`, `unescape_path_values`, `max_multipart_memory` and
`secure_json_prefix` (also settable with `set_secure_json_prefix`).

## Handling requests without a server

`Engine.serve(request)` dispatches a `gimlet.http.Request` and returns the
`gimlet.http.ResponseWriter` that holds the status, headers and body:

```python
from gimlet.engine import new
from gimlet.http import Request

app = new()
app.get("/ping", lambda c: c.json(200, {"pong": True}))

response = app.serve(Request("GET", "/ping"))
print(response.status, response.body)  # 200 b'{"pong":true}'
```

`Engine.handle_context(c)` dispatches an existing context again after its
request path has been rewritten.

## Inside a handler

A handler receives the `Context` (`gimlet.context`):

- flow: `next()`, `abort()`, `is_aborted()`, `abort_with_status(code)`,
  `abort_with_status_json(code, obj)`, `abort_with_error(code, err)`
- per-request values: `set(key, value)`, `get(key)` (returns a
  `(value, exists)` pair), `must_get(key)` (raises `KeyError`) and the typed
  readers `get_string`, `get_bool`, `get_int`, `get_float`, `get_list`,
  `get_dict`, which return an empty value when the stored one has another
  type
- responses: `json`, `indented_json`, `secure_json`, `jsonp`, `pure_json`,
  `string`, `data`, `stream`, plus `status`, `header`, `set_same_site` and
  `set_cookie`; for status 1xx, 204 and 304 only the content type is set and
  no body is written
- content negotiation: `negotiate_format(*offered)` and
  `set_accepted(*formats)`
- `copy()` gives a detached copy to use after the request has finished

Request input comes from `gimlet.inputs.RequestInput`, which `Context`
extends: path parameters (`param`, `add_param`), query strings (`query`,
`default_query`, `get_query`, `query_array`, `query_map`), posted forms
(`post_form`, `default_post_form`, `post_form_array`, `post_form_map`),
uploads (`form_file`, `multipart_form`, `save_uploaded_file`,
`save_octet_stream_file`), headers (`get_header`, `content_type`,
`is_websocket`), the raw body (`get_raw_data`), cookies (`cookie`) and the
client address (`client_ip`, `remote_ip`).

## Errors

`Context.error(err)` records an error for the request and returns a
`gimlet.errors.Error`, which can be tagged with `set_type` using the
`ErrorType` flags and given extra data with `set_meta`. The collected
errors, `Context.errors`, are an `ErrorMsgs` list that can be filtered with
`by_type` and turned into JSON with `json()` or `marshal_json()`.

```python
from gimlet.errors import ErrorType


def create_item(c):
    c.error(ValueError("missing name")).set_type(ErrorType.PUBLIC)
    c.abort_with_status_json(400, {"error": "missing name"})
```

## Client addresses behind proxies

`Engine.set_trusted_proxies([...])` takes IP addresses and CIDR blocks and
raises `ValueError` for anything else. The headers in `remote_ip_headers`
(`X-Forwarded-For` and `X-Real-IP` by default) are only believed when the
direct peer is trusted; passing `None` turns header trust off. By default
every address is trusted. Setting `trusted_platform` to
`PLATFORM_GOOGLE_APP_ENGINE`, `PLATFORM_CLOUDFLARE` or any header name makes
`client_ip()` take that header first.

## File systems

`gimlet.fs.directory(root, list_directory)` returns a `Directory` rooted at
`root`, or, when `list_directory` is false, an `OnlyFilesFS` whose opened
directories report no entries. Opened paths cannot leave the root.

## Debug output

`gimlet.debug.set_mode` switches between `DEBUG_MODE`, `RELEASE_MODE` and
`TEST_MODE`; the starting mode is read from the `GIMLET_MODE` environment
variable and is debug when it is unset. In debug mode route registrations
and warnings are written to the writers chosen with `set_writers` (stdout
and stderr by default).

## A process-wide engine

`gimlet.gins` keeps one lazily created `default()` engine for small
scripts, with module-level `use`, `handle`, `get`, `post`, `no_route`,
`no_method`, `routes` and `run`.

## What gimlet does not do

- There is no HTML template rendering and no XML, YAML or protobuf output;
  responses are JSON variants, plain text, raw bytes or streams.
- Request bodies are not bound into objects; read them through the query,
  form and raw-body accessors.
- There are no route groups and no static-file routes; `gimlet.fs` only
  opens files.
- The server is plain HTTP on a TCP address; there is no TLS, Unix socket or
  file-descriptor serving, and there is no command-line program.