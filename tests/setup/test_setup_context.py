import pytest

from kubeprov.errors import MissingContextKeyError
from kubeprov.setup.context import ContextKey, SetupContext

PORT = ContextKey("port", int)
NAME = ContextKey("name", str)


def test_set_and_get_typed_values():
    ctx = SetupContext()
    ctx.set(PORT, 6443)

    assert ctx.get(PORT) == 6443
    assert PORT in ctx
    assert "port" in ctx
    assert NAME not in ctx


def test_missing_key_names_the_key_and_known_keys():
    ctx = SetupContext({PORT: 22})

    with pytest.raises(MissingContextKeyError) as exc_info:
        ctx.get(NAME)

    message = str(exc_info.value)
    assert "'name'" in message
    assert "port" in message
    # Still a KeyError for callers that only know the mapping protocol.
    assert isinstance(exc_info.value, KeyError)


def test_type_mismatch_is_rejected():
    ctx = SetupContext()
    with pytest.raises(TypeError):
        ctx.set(PORT, "6443")


def test_get_or_default():
    ctx = SetupContext()
    assert ctx.get_or(NAME) is None
    assert ctx.get_or(NAME, "fallback") == "fallback"


def test_read_only_view_has_no_setter():
    ctx = SetupContext({NAME: "alpha"})
    view = ctx.read_only()

    assert view.get(NAME) == "alpha"
    assert NAME in view
    assert not hasattr(view, "set")

    ctx.set(NAME, "beta")
    assert view.get(NAME) == "beta"
