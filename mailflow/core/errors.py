"""Error taxonomy shared by the engine, segmentation and campaign layers."""


class MailflowError(Exception):
    """Base class for all domain errors."""


class ValidationError(MailflowError):
    """A condition, field, operator or definition failed validation."""


class NotFoundError(MailflowError):
    """A referenced subscriber, template, segment or automation does not exist."""


class DeliveryError(MailflowError):
    """The delivery collaborator could not hand the message off."""


class ClaimConflictError(MailflowError):
    """Another worker already claimed the record being resumed."""


class ConfigurationError(MailflowError):
    """An unknown trigger or action kind was requested."""
