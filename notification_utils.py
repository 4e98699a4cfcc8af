import logging
import smtplib
from email.mime.text import MIMEText


def format_result_message(result: dict) -> str:
    telemetry = result.get("telemetry") or {}
    lines = [
        f"Confirmation: {result.get('confirmation_number')}",
        f"Role: {result.get('role')}",
        f"Success: {result.get('success')}",
        f"Boarding position: {result.get('boarding_position') or '-'}",
        f"Submitted at: {result.get('actual_fire_time') or '-'}",
        f"Offset from opening: {result.get('timing_offset_ms')} ms",
        f"Sync method: {telemetry.get('sync_method')}",
        f"Retries: {telemetry.get('retry_count')}",
    ]
    if result.get("error"):
        lines.append(f"Error: {result['error']}")
    return "\n".join(lines)


def send_notification(cfg, subject: str, message: str) -> bool:
    if not cfg.is_smtp_configured():
        logging.info("Skipping email notification - SMTP not fully configured.")
        return False

    try:
        msg = MIMEText(message)
        msg["Subject"] = subject
        msg["From"] = cfg.smtp_user
        msg["To"] = cfg.notify_email

        with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_pass)
            server.sendmail(cfg.smtp_user, cfg.notify_email, msg.as_string())

        logging.info("Email notification sent successfully")
        return True
    except smtplib.SMTPAuthenticationError as exc:
        logging.error("SMTP authentication failed: %s", exc)
        guidance = "Please verify your SMTP username and password/app key."
        if "gmail" in str(getattr(cfg, "smtp_server", "")).lower():
            guidance += " For Gmail, use an App Password and enable 2FA."
        logging.error(guidance)
    except (smtplib.SMTPException, OSError) as exc:
        logging.exception("Failed to send email notification: %s", exc)

    return False
