"""Error taxonomy for the mailbox and delivery pipeline."""


class CourierError(Exception):
    pass


class ReadError(CourierError):
    """A record is missing or unreadable. Skip that id and carry on."""


class ParseError(ReadError):
    """A record exists but its content is malformed."""


class AlreadyClaimed(CourierError):
    """Lost a claim race. Expected; not worth more than a debug line."""


class DeliveryError(CourierError):
    """Connect, send or acknowledgment to the relay failed or timed out."""


class PersistError(CourierError):
    """A durable write failed. Fails the dispatch it belongs to."""


class StoreUnavailable(CourierError):
    """The backing directory cannot be used at all. Fatal at startup."""
