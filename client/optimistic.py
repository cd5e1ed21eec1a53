from typing import Any, Callable, Optional

_UNSET = object()


class OptimisticValue:
    """
    乐观更新的两阶段本地状态。

    propose() 立即让界面看到新值并返回版本号；请求成功后 confirm()，失败 rollback()。
    带旧版本号的 confirm/rollback 会被忽略，乱序返回的响应不会覆盖较新的提议。
    """

    def __init__(self, value: Any = None):
        self._confirmed = value
        self._pending = _UNSET
        self._version = 0

    @property
    def value(self) -> Any:
        return self._confirmed if self._pending is _UNSET else self._pending

    @property
    def confirmed(self) -> Any:
        return self._confirmed

    @property
    def is_pending(self) -> bool:
        return self._pending is not _UNSET

    @property
    def version(self) -> int:
        return self._version

    def propose(self, value: Any) -> int:
        self._version += 1
        self._pending = value
        return self._version

    def confirm(self, version: Optional[int] = None, value: Any = _UNSET) -> bool:
        if version is not None and version != self._version:
            return False
        if value is not _UNSET:
            self._confirmed = value
        elif self._pending is not _UNSET:
            self._confirmed = self._pending
        self._pending = _UNSET
        return True

    def rollback(self, version: Optional[int] = None) -> bool:
        if version is not None and version != self._version:
            return False
        self._pending = _UNSET
        return True

    def apply(self, value: Any, mutate: Callable[[Any], Any]) -> Any:
        """propose 后同步执行 mutate(value)，异常时回滚并继续抛出。"""
        version = self.propose(value)
        try:
            result = mutate(value)
        except Exception:
            self.rollback(version)
            raise
        self.confirm(version)
        return result
