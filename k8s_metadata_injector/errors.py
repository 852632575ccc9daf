class InjectorError(Exception):
    """Base class for errors raised by the tagger and the injector."""


class TagParseError(InjectorError, ValueError):
    def __init__(self, annotation: str, entry: str) -> None:
        super().__init__(f"invalid tag entry {entry!r} in annotation {annotation!r}")
        self.annotation = annotation
        self.entry = entry


class VolumeIDError(InjectorError, ValueError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"unexpected volume identifier format: {identifier!r}")
        self.identifier = identifier


class DecodeError(InjectorError, ValueError):
    pass


class TaggingError(InjectorError, RuntimeError):
    pass
