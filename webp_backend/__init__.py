"""
===============================================================================
 WEBP BACKEND PACKAGE INITIALIZER
===============================================================================

Purpose:
--------
Single, stable namespace for the image optimization pipeline:

    webp_backend.services.image_processor   (WebP transform engine)
    webp_backend.services.image_config      (presets + runtime settings)
    webp_backend.services.backup_manager    (original-image backups)
    webp_backend.services.batch_converter   (bulk conversion)
    webp_backend.services.quality_monitor   (post-conversion scoring)
    webp_backend.main                       (CLI)

Metadata:
---------
Version : 1.0.0
===============================================================================
"""

__version__ = "1.0.0"

import logging

logger = logging.getLogger("webp_backend")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

logger.debug("webp_backend package initialized")
