"""Post-renewal deployment of certificate artifacts."""
import logging

deploy_logger = logging.getLogger("certmgr_deploy")
