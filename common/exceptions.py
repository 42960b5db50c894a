class PhotoJobError(Exception):
    """Base class for everything that can abort a photo job."""


class MalformedJobError(PhotoJobError):
    """The queue payload could not be turned into a valid Job."""


class DecodeError(PhotoJobError):
    """The source blob is not an image Pillow can read."""


class StoreIOError(PhotoJobError):
    """A blob, table or queue call failed. The caller decides whether to retry."""


class CatalogConflict(PhotoJobError):
    """The catalog record changed between the scan and the replace."""


class CatalogNotFound(PhotoJobError):
    """No catalog record in the partition carries the job's numeric id."""
