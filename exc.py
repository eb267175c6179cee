class ApplicationError(Exception):
    pass


class PatchEncodeError(ApplicationError):
    pass


class ResponseEncodeError(ApplicationError):
    pass


class ProviderError(Exception):
    pass


class TemplateFetchError(ProviderError):
    pass


class ConfigurationError(Exception):
    pass
