"""
Security Audit Logging for CodeDrop
Writes refused-access and authentication events as JSON lines to a
dedicated rotating log, separate from the application log
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


class SecurityAuditLogger:
    """
    Structured security event log.

    Owns the 'security_audit' logger. Created once by the application
    factory; tests may pass a temporary log_dir or None to skip the file
    handler entirely (events still reach any handler attached by caplog).
    """
    def __init__(self, log_dir: Optional[str] = None, to_file: bool = True):
        self.security_logger = logging.getLogger('security_audit')
        self.security_logger.setLevel(logging.INFO)
        self.security_logger.propagate = False  # Don't propagate to root logger

        if to_file:
            if log_dir is None:
                from config.paths import LOG_DIR
                log_dir = LOG_DIR
            os.makedirs(log_dir, mode=0o700, exist_ok=True)
            log_path = os.path.join(log_dir, 'security_audit.log')

            # Only one handler per file, even when several apps share the process
            existing = [
                h for h in self.security_logger.handlers
                if isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(log_path)
            ]
            if not existing:
                # Max 10MB per file, keep 14 backups
                security_handler = RotatingFileHandler(
                    log_path,
                    maxBytes=10*1024*1024,  # 10MB
                    backupCount=14,
                    encoding='utf-8'
                )
                security_handler.setLevel(logging.INFO)
                security_handler.setFormatter(logging.Formatter(
                    '%(asctime)s - SECURITY - %(levelname)s - %(message)s',
                    datefmt='%Y-%m-%d %H:%M:%S UTC'
                ))
                self.security_logger.addHandler(security_handler)

    def _log_security_event(self, level: str, event_type: str, client_ip: Optional[str],
                            actor_id: Optional[str] = None, details: dict = None,
                            risk_level: str = "LOW"):
        """Internal method to log structured security events"""
        log_data = {
            "event_type": event_type,
            "client_ip": client_ip or "unknown",
            "actor_id": actor_id,
            "risk_level": risk_level,
            "details": details or {}
        }

        message = json.dumps(log_data, default=str)

        if level.upper() == "ERROR":
            self.security_logger.error(message)
        elif level.upper() == "WARNING":
            self.security_logger.warning(message)
        else:
            self.security_logger.info(message)

    def log_authentication_attempt(self, client_ip: str, success: bool, endpoint: str,
                                   actor_id: Optional[str] = None):
        """Log API key authentication attempts (both success and failure)"""
        self._log_security_event(
            level="INFO" if success else "WARNING",
            event_type="AUTH_SUCCESS" if success else "AUTH_FAILURE",
            client_ip=client_ip,
            actor_id=actor_id,
            details={"endpoint": endpoint},
            risk_level="LOW" if success else "MEDIUM"
        )

    def log_rate_limit_violation(self, client_ip: str, actor_id: str, operation: str, retry_after: int):
        self._log_security_event(
            level="WARNING",
            event_type="RATE_LIMIT_VIOLATION",
            client_ip=client_ip,
            actor_id=actor_id,
            details={"operation": operation, "retry_after": retry_after},
            risk_level="MEDIUM"
        )

    def log_access_refused(self, client_ip: str, actor_id: str, operation: str, reason: str):
        """Log a request refused by the kill switch, transport check or privilege check"""
        self._log_security_event(
            level="WARNING",
            event_type=f"ACCESS_REFUSED_{reason.upper()}",
            client_ip=client_ip,
            actor_id=actor_id,
            details={"operation": operation, "reason": reason},
            risk_level="HIGH" if reason == "forbidden" else "MEDIUM"
        )

