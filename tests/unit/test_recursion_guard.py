import pytest

from app.services.recursion_guard import ReactionScope


def test_guarded_only_inside_scope():
    scope = ReactionScope()
    assert scope.guarded() is False

    with scope.enter():
        assert scope.guarded() is True
        with scope.enter():
            assert scope.depth == 2
        assert scope.guarded() is True

    assert scope.guarded() is False


def test_released_on_error():
    scope = ReactionScope()

    with pytest.raises(RuntimeError):
        with scope.enter():
            raise RuntimeError("boom")

    assert scope.depth == 0
    assert scope.guarded() is False


def test_scopes_are_independent():
    first, second = ReactionScope(), ReactionScope()

    with first.enter():
        assert second.guarded() is False
