class ProvisioningError(Exception):
    """Base class for errors raised while provisioning or handing off a stack"""
    pass
