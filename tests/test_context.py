from dataclasses import dataclass
from types import SimpleNamespace

import pytest

from gimlet.context import (
    ABORT_INDEX,
    MIME_HTML,
    MIME_JSON,
    MIME_POST_FORM,
    MIME_XML,
    Context,
    HandlersChain,
    body_allowed_for_status,
)
from gimlet.errors import Error, ErrorType
from gimlet.http import Request
from gimlet.inputs import Param, Params


def handler_name_test(c):
    pass


def handler_name_test2(c):
    pass


def _ctx(request=None, engine=None):
    return Context(request=request, engine=engine)


def test_reset():
    c = _ctx()
    c.index = 2
    c.params = Params([Param("", "")])
    c.error(ValueError("test"))
    c.set("foo", "bar")
    c.reset()
    assert not c.is_aborted()
    assert c.keys is None
    assert c.accepted is None
    assert len(c.errors) == 0
    assert c.errors.errors() == []
    assert len(c.errors.by_type(ErrorType.ANY)) == 0
    assert len(c.params) == 0
    assert c.index == -1


def test_handlers_last():
    c = _ctx()
    assert c.handlers.last() is None

    def f(c):
        pass

    def g(c):
        pass

    c.handlers = HandlersChain([f])
    assert c.handlers.last() is f
    c.handlers = HandlersChain([f, g])
    assert c.handlers.last() is g


def test_set_get():
    c = _ctx()
    c.set("foo", "bar")
    assert c.get("foo") == ("bar", True)
    assert c.get("foo2") == (None, False)
    assert c.must_get("foo") == "bar"
    with pytest.raises(KeyError):
        c.must_get("no_exist")


def test_keys_without_request():
    c = Context()
    c.set("foo", "bar")
    assert c.get("foo") == ("bar", True)
    assert c.get("foo2") == (None, False)


def test_typed_getters():
    c = _ctx()
    c.set("string", "this is a string")
    c.set("bool", True)
    c.set("int", 1)
    c.set("float", 4.2)
    c.set("slice", ["foo"])
    c.set("map", {"foo": 1})
    assert c.get_string("string") == "this is a string"
    assert c.get_bool("bool") is True
    assert c.get_int("int") == 1
    assert c.get_float("float") == 4.2
    assert c.get_list("slice") == ["foo"]
    assert c.get_dict("map") == {"foo": 1}
    assert c.get_dict("map")["foo"] == 1


def test_typed_getters_wrong_type():
    c = _ctx()
    c.set("bool", True)
    c.set("string", "x")
    assert c.get_int("bool") == 0
    assert c.get_string("bool") == ""
    assert c.get_bool("string") is False
    assert c.get_float("missing") == 0.0
    assert c.get_list("string") == []


def test_copy():
    c = _ctx(request=Request("POST", "/hola"))
    c.index = 2
    c.handlers = HandlersChain([lambda c: None])
    c.params = Params([Param("foo", "bar")])
    c.set("foo", "bar")

    cp = c.copy()
    assert len(cp.handlers) == 0
    assert cp.writer is not c.writer
    assert cp.request is c.request
    assert cp.index == ABORT_INDEX
    assert cp.keys == c.keys
    assert cp.engine is c.engine
    assert cp.params == c.params
    cp.set("foo", "notBar")
    assert c.keys["foo"] == "bar"
    assert cp.keys["foo"] == "notBar"


def test_handler_name():
    c = _ctx()
    c.handlers = HandlersChain([lambda c: None, handler_name_test])
    assert c.handler_name().endswith(".handler_name_test")
    assert c.handler() is handler_name_test


def test_handler_names():
    c = _ctx()
    c.handlers = HandlersChain(
        [lambda c: None, handler_name_test, lambda c: None, handler_name_test2]
    )
    names = c.handler_names()
    assert len(names) == 4
    assert names[1].endswith(".handler_name_test")
    assert names[3].endswith(".handler_name_test2")


def test_next_runs_in_order_and_abort_stops():
    calls = []

    def first(c):
        calls.append("first")
        c.abort()

    def second(c):
        calls.append("second")

    c = _ctx()
    c.handlers = HandlersChain([first, second])
    c.next()
    assert calls == ["first"]
    assert c.is_aborted()


def test_reset_in_handler():
    c = _ctx()
    c.handlers = HandlersChain([lambda ctx: ctx.reset()])
    c.next()
    assert c.index == 0


def test_set_cookie():
    c = _ctx()
    c.set_same_site("Lax")
    c.set_cookie("user", "gin", 1, "/", "localhost", True, True)
    assert (
        c.writer.headers.get("Set-Cookie")
        == "user=gin; Path=/; Domain=localhost; Max-Age=1; HttpOnly; Secure; SameSite=Lax"
    )


def test_set_cookie_path_empty():
    c = _ctx()
    c.set_same_site("Lax")
    c.set_cookie("user", "gin", 1, "", "localhost", True, True)
    assert (
        c.writer.headers.get("Set-Cookie")
        == "user=gin; Path=/; Domain=localhost; Max-Age=1; HttpOnly; Secure; SameSite=Lax"
    )


@pytest.mark.parametrize(
    "status, allowed", [(102, False), (204, False), (304, False), (500, True), (200, True)]
)
def test_body_allowed_for_status(status, allowed):
    assert body_allowed_for_status(status) is allowed


class _PanicRender:
    def render(self, writer):
        raise ValueError("TestPanicRender")

    def write_content_type(self, writer):
        pass


def test_render_raises_on_error():
    c = _ctx()
    with pytest.raises(ValueError, match="TestPanicRender"):
        c.render(200, _PanicRender())


def test_render_json():
    c = _ctx()
    c.json(201, {"foo": "bar", "html": "<b>"})
    assert c.writer.status == 201
    assert c.writer.body == b'{"foo":"bar","html":"\\u003cb\\u003e"}'
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_jsonp():
    c = _ctx(request=Request("GET", "http://example.com/?callback=x"))
    c.jsonp(201, {"foo": "bar"})
    assert c.writer.status == 201
    assert c.writer.body == b'x({"foo":"bar"});'
    assert c.writer.headers.get("Content-Type") == "application/javascript; charset=utf-8"


def test_render_jsonp_without_callback():
    c = _ctx(request=Request("GET", "http://example.com"))
    c.jsonp(201, {"foo": "bar"})
    assert c.writer.body == b'{"foo":"bar"}'
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_no_content_json():
    c = _ctx()
    c.json(204, {"foo": "bar"})
    assert c.writer.status == 204
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_api_json_keeps_content_type():
    c = _ctx()
    c.header("Content-Type", "application/vnd.api+json")
    c.json(201, {"foo": "bar"})
    assert c.writer.body == b'{"foo":"bar"}'
    assert c.writer.headers.get("Content-Type") == "application/vnd.api+json"


def test_render_no_content_api_json():
    c = _ctx()
    c.header("Content-Type", "application/vnd.api+json")
    c.json(204, {"foo": "bar"})
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "application/vnd.api+json"


def test_render_indented_json():
    c = _ctx()
    c.indented_json(201, {"foo": "bar", "bar": "foo", "nested": {"foo": "bar"}})
    assert c.writer.status == 201
    assert c.writer.body == (
        b'{\n    "bar": "foo",\n    "foo": "bar",\n    "nested": {\n        "foo": "bar"\n    }\n}'
    )
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_no_content_indented_json():
    c = _ctx()
    c.indented_json(204, {"foo": "bar"})
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_secure_json():
    c = _ctx(engine=SimpleNamespace(secure_json_prefix="&&&START&&&"))
    c.secure_json(201, ["foo", "bar"])
    assert c.writer.status == 201
    assert c.writer.body == b'&&&START&&&["foo","bar"]'
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_secure_json_default_prefix_and_objects():
    c = _ctx()
    c.secure_json(200, ["foo"])
    assert c.writer.body == b'while(1);["foo"]'
    d = _ctx()
    d.secure_json(200, {"foo": "bar"})
    assert d.writer.body == b'{"foo":"bar"}'


def test_render_no_content_secure_json():
    c = _ctx()
    c.secure_json(204, ["foo", "bar"])
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_pure_json():
    c = _ctx()
    c.pure_json(201, {"foo": "bar", "html": "<b>"})
    assert c.writer.status == 201
    assert c.writer.body == b'{"foo":"bar","html":"<b>"}\n'
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_string():
    c = _ctx()
    c.string(201, "test %s %d", "string", 2)
    assert c.writer.status == 201
    assert c.writer.body == b"test string 2"
    assert c.writer.headers.get("Content-Type") == "text/plain; charset=utf-8"


def test_render_no_content_string():
    c = _ctx()
    c.string(204, "test %s %d", "string", 2)
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "text/plain; charset=utf-8"


def test_render_html_string():
    c = _ctx()
    c.header("Content-Type", "text/html; charset=utf-8")
    c.string(201, "<html>%s %d</html>", "string", 3)
    assert c.writer.body == b"<html>string 3</html>"
    assert c.writer.headers.get("Content-Type") == "text/html; charset=utf-8"


def test_render_data():
    c = _ctx()
    c.data(201, "text/csv", b"foo,bar")
    assert c.writer.status == 201
    assert c.writer.body == b"foo,bar"
    assert c.writer.headers.get("Content-Type") == "text/csv"


def test_render_no_content_data():
    c = _ctx()
    c.data(204, "text/csv", b"foo,bar")
    assert c.writer.body == b""
    assert c.writer.headers.get("Content-Type") == "text/csv"


def test_headers():
    c = _ctx()
    c.header("Content-Type", "text/plain")
    c.header("X-Custom", "value")
    assert c.writer.headers.get("Content-Type") == "text/plain"
    assert c.writer.headers.get("X-Custom") == "value"
    c.header("Content-Type", "text/html")
    c.header("X-Custom", "")
    assert c.writer.headers.get("Content-Type") == "text/html"
    assert "X-Custom" not in c.writer.headers


def test_negotiation_format():
    c = _ctx(request=Request("POST", ""))
    with pytest.raises(ValueError):
        c.negotiate_format()
    assert c.negotiate_format(MIME_JSON, MIME_XML) == MIME_JSON
    assert c.negotiate_format(MIME_HTML, MIME_JSON) == MIME_HTML


def test_negotiation_format_with_accept():
    request = Request(
        "POST", "/", headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9;q=0.8"}
    )
    c = _ctx(request=request)
    assert c.negotiate_format(MIME_JSON, MIME_XML) == MIME_XML
    assert c.negotiate_format(MIME_XML, MIME_HTML) == MIME_HTML
    assert c.negotiate_format(MIME_JSON) == ""


def test_negotiation_format_with_wildcard_accept():
    c = _ctx(request=Request("POST", "/", headers={"Accept": "*/*"}))
    assert c.negotiate_format("*/*") == "*/*"
    assert c.negotiate_format("text/*") == "text/*"
    assert c.negotiate_format("application/*") == "application/*"
    assert c.negotiate_format(MIME_JSON) == MIME_JSON
    assert c.negotiate_format(MIME_XML) == MIME_XML
    assert c.negotiate_format(MIME_HTML) == MIME_HTML

    c = _ctx(request=Request("POST", "/", headers={"Accept": "text/*"}))
    assert c.negotiate_format("*/*") == "*/*"
    assert c.negotiate_format("text/*") == "text/*"
    assert c.negotiate_format("application/*") == ""
    assert c.negotiate_format(MIME_JSON) == ""
    assert c.negotiate_format(MIME_XML) == ""
    assert c.negotiate_format(MIME_HTML) == MIME_HTML


def test_negotiation_format_custom():
    request = Request(
        "POST", "/", headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9;q=0.8"}
    )
    c = _ctx(request=request)
    c.accepted = None
    c.set_accepted(MIME_JSON, MIME_XML)
    assert c.negotiate_format(MIME_JSON, MIME_XML) == MIME_JSON
    assert c.negotiate_format(MIME_XML, MIME_HTML) == MIME_XML
    assert c.negotiate_format(MIME_JSON) == MIME_JSON


def test_negotiation_unoffered_format():
    c = _ctx(request=Request("POST", "/", headers={"Accept": MIME_JSON}))
    assert c.negotiate_format(MIME_POST_FORM) == ""


def test_is_aborted():
    c = _ctx()
    assert not c.is_aborted()
    c.abort()
    assert c.is_aborted()
    c.next()
    assert c.is_aborted()
    c.index += 1
    assert c.is_aborted()


def test_abort_with_status():
    c = _ctx()
    c.index = 4
    c.abort_with_status(401)
    assert c.index == ABORT_INDEX
    assert c.writer.status == 401
    assert c.writer.written
    assert c.is_aborted()


@dataclass
class _AbortMsg:
    foo: str
    bar: str


def test_abort_with_status_json():
    c = _ctx()
    c.index = 4
    c.abort_with_status_json(415, _AbortMsg(foo="fooValue", bar="barValue"))
    assert c.index == ABORT_INDEX
    assert c.writer.status == 415
    assert c.is_aborted()
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"
    assert c.writer.body == b'{"foo":"fooValue","bar":"barValue"}'


def test_error():
    c = _ctx()
    assert len(c.errors) == 0
    first = ValueError("first error")
    c.error(first)
    assert len(c.errors) == 1
    assert str(c.errors) == "Error #01: first error\n"

    second = ValueError("second error")
    c.error(Error(second, type=ErrorType.PUBLIC, meta="some data 2"))
    assert len(c.errors) == 2
    assert c.errors[0].err is first
    assert c.errors[0].meta is None
    assert c.errors[0].type == ErrorType.PRIVATE
    assert c.errors[1].err is second
    assert c.errors[1].meta == "some data 2"
    assert c.errors[1].type == ErrorType.PUBLIC
    assert c.errors.last() is c.errors[1]

    with pytest.raises(ValueError):
        c.error(None)


def test_typed_error():
    c = _ctx()
    c.error(ValueError("externo 0")).set_type(ErrorType.PUBLIC)
    c.error(ValueError("interno 0")).set_type(ErrorType.PRIVATE)
    assert all(e.type == ErrorType.PUBLIC for e in c.errors.by_type(ErrorType.PUBLIC))
    assert all(e.type == ErrorType.PRIVATE for e in c.errors.by_type(ErrorType.PRIVATE))
    assert c.errors.errors() == ["externo 0", "interno 0"]


def test_abort_with_error():
    c = _ctx()
    err = c.abort_with_error(401, ValueError("bad input")).set_meta("some input")
    assert c.writer.status == 401
    assert c.index == ABORT_INDEX
    assert c.is_aborted()
    assert err.meta == "some input"
    assert c.errors.last() is err


def test_value():
    c = _ctx(request=Request("POST", "/", body='{"foo":"bar", "bar":"foo"}'))
    assert c.value(0) is c.request
    assert c.value("foo") is None
    c.set("foo", "bar")
    assert c.value("foo") == "bar"
    assert c.value(1) is None


def test_value_from_request_context():
    key = object()
    c = Context(request=Request("POST", "/", context_values={key: "value"}))
    assert c.value(key) == "value"
    assert Context().value("key") is None
    assert Context(request=Request("POST", "/")).value("key") is None


def test_add_param():
    c = Context()
    c.add_param("id", "1")
    assert c.params.get("id") == ("1", True)
    assert c.param("id") == "1"


def test_stream():
    c = _ctx()
    state = {"keep": True}

    def step(w):
        w.write(b"test")
        keep = state["keep"]
        state["keep"] = False
        return keep

    gone = c.stream(step)
    assert gone is False
    assert c.writer.body == b"testtest"


def test_stream_with_client_gone():
    c = _ctx()

    def step(w):
        w.write(b"test")
        w.close_client()
        return True

    gone = c.stream(step)
    assert gone is True
    assert c.writer.body == b"test"


def test_full_path_default():
    c = _ctx()
    assert c.full_path() == ""
    c.matched_path = "/user/:id"
    assert c.full_path() == "/user/:id"