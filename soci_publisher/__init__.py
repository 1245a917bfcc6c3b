"""soci-publisher: builds SOCI indexes for ECR images and pushes them back.

One invocation validates an image manifest, pulls the image into a scratch
workspace, builds a Seekable OCI index for it and publishes the index to the
same repository.
"""

__version__ = "0.1.0"
__description__ = "SOCI index build-and-publish job for Amazon ECR images"

__all__ = ["__version__"]
