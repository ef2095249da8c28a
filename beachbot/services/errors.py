class TradeError(Exception):
    """A user-facing rejection. Never a fault; no state was changed."""


class ValidationRejected(TradeError):
    pass


class PermissionRejected(TradeError):
    pass


class NotFoundRejected(TradeError):
    pass
