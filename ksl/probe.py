from functools import wraps
from types import MethodType
from typing import Any, Callable, Iterable, Union

import simpy

from .response import Response

ProbeCallback = Callable[[Any], None]
ProbeCallbacks = Iterable[ProbeCallback]
ProbeTarget = Union[Response, simpy.Resource, simpy.Store, simpy.Container, MethodType]


def attach(
    scope: str, target: ProbeTarget, callbacks: ProbeCallbacks, **hints: Any
) -> None:
    if isinstance(target, MethodType):
        _attach_method(target, callbacks)
    elif isinstance(target, Response):
        _attach_response_value(target, callbacks)
    elif isinstance(target, simpy.Container):
        _attach_container_level(target, callbacks)
    elif isinstance(target, simpy.Store):
        _attach_store_items(target, callbacks)
    elif isinstance(target, simpy.Resource):
        if hints.get('trace_queue'):
            _attach_resource_queue(target, callbacks)
        else:
            _attach_resource_users(target, callbacks)
    else:
        raise TypeError(f'Cannot probe {scope} of type {type(target)}')


def _attach_method(method: MethodType, callbacks: ProbeCallbacks) -> None:
    def make_wrapper(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            value = func(*args, **kwargs)
            for callback in callbacks:
                callback(value)
            return value

        return wrapper

    setattr(method.__self__, method.__func__.__name__, make_wrapper(method))


def _attach_response_value(response: Response, callbacks: ProbeCallbacks) -> None:
    response._probe_callbacks.extend(callbacks)


def _make_change_wrapper(get_quantity: Callable[[], Any], callbacks: ProbeCallbacks):
    def make_wrapper(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            old = get_quantity()
            ret = func(*args, **kwargs)
            new = get_quantity()
            if new != old:
                for callback in callbacks:
                    callback(new)
            return ret

        return wrapper

    return make_wrapper


def _attach_container_level(
    container: simpy.Container, callbacks: ProbeCallbacks
) -> None:
    make_wrapper = _make_change_wrapper(lambda: container._level, callbacks)
    container._do_get = make_wrapper(container._do_get)  # type: ignore
    container._do_put = make_wrapper(container._do_put)  # type: ignore


def _attach_store_items(store: simpy.Store, callbacks: ProbeCallbacks) -> None:
    make_wrapper = _make_change_wrapper(lambda: len(store.items), callbacks)
    store._do_get = make_wrapper(store._do_get)  # type: ignore
    store._do_put = make_wrapper(store._do_put)  # type: ignore


def _attach_resource_users(resource: simpy.Resource, callbacks: ProbeCallbacks) -> None:
    make_wrapper = _make_change_wrapper(lambda: len(resource.users), callbacks)
    resource._do_get = make_wrapper(resource._do_get)  # type: ignore
    resource._do_put = make_wrapper(resource._do_put)  # type: ignore


def _attach_resource_queue(resource: simpy.Resource, callbacks: ProbeCallbacks) -> None:
    make_wrapper = _make_change_wrapper(lambda: len(resource.queue), callbacks)
    resource.request = make_wrapper(resource.request)  # type: ignore
    resource._trigger_put = make_wrapper(resource._trigger_put)  # type: ignore
