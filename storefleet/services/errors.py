class StoreFleetException(Exception):
    pass


class IntegrityException(StoreFleetException):
    pass


class NotFoundException(StoreFleetException):
    pass


class UnknownStoreTypeError(StoreFleetException):
    def __init__(self, store_type: str) -> None:
        self.store_type = store_type
        super().__init__(f"Unknown store type: {store_type}")


class ReadinessTimeoutError(StoreFleetException):
    def __init__(self, namespace: str, timeout: float) -> None:
        self.namespace = namespace
        self.timeout = timeout
        super().__init__(
            f"Timeout waiting for pods to be ready after {timeout:g}s in namespace {namespace}"
        )
