# pylint: disable=missing-module-docstring
import logging

module_logger = logging.getLogger("certmgr_module")
