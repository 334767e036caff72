"""Best-effort email notifications.

Senders return ``False`` instead of raising: a failed email never undoes the
booking or account creation that triggered it.
"""

import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from clinic_booking.core import config

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r'<[^>]+>')


def send_mail(to: str, subject: str, html: str = '', text: str = '') -> bool:
    if not to or not subject:
        logger.error("Refusing to send email without 'to' or 'subject'")
        return False

    if not config.EMAIL_ADDRESS:
        logger.warning('EMAIL_ADDRESS is not configured; skipping email to %s', to)
        return False

    message = EmailMessage()
    message['From'] = formataddr((config.MAIL_FROM_NAME, config.EMAIL_ADDRESS))
    message['To'] = to
    message['Subject'] = subject
    message.set_content(text or _TAG_PATTERN.sub('', html))
    if html:
        message.add_alternative(html, subtype='html')

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=30) as smtp:
            if config.SMTP_STARTTLS:
                smtp.starttls()
            if config.EMAIL_PASSWORD:
                smtp.login(config.EMAIL_ADDRESS, config.EMAIL_PASSWORD)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError):
        logger.exception('Sending email to %s failed', to)
        return False

    logger.info('Email sent to %s: %s', to, subject)
    return True


def send_doctor_welcome(name: str, email: str, password: str) -> bool:
    html = f"""
      <h3>Welcome Dr. {name},</h3>
      <p>Your profile has been added successfully to the Doctor Booking System.</p>
      <p><b>Login Credentials:</b></p>
      <ul>
          <li>Email: {email}</li>
          <li>Password: {password}</li>
      </ul>
      <p>Please log in to your account at the admin panel and update your profile as needed.</p>
      <p><strong>Important:</strong> For security reasons, please change your password after your first login.</p>
      <br>
      <p>Thanks,<br/>Doctor Booking Team</p>
    """
    return send_mail(to=email, subject='Doctor Account Created - Login Credentials', html=html)


def send_booking_confirmation(
    patient_name: str,
    patient_email: str,
    doctor_name: str,
    day_label: str,
    time_label: str,
    amount: int,
) -> bool:
    html = f"""
      <h3>Hello {patient_name},</h3>
      <p>Your appointment with {doctor_name} is confirmed.</p>
      <ul>
          <li>Date: {day_label}</li>
          <li>Time: {time_label}</li>
          <li>Fee: {config.CURRENCY}{amount}</li>
      </ul>
      <p>You can cancel or pay for the appointment from the My Appointments page.</p>
      <br>
      <p>Thanks,<br/>Doctor Booking Team</p>
    """
    return send_mail(to=patient_email, subject='Appointment Confirmed', html=html)


def send_password_reset(name: str, email: str, reset_url: str) -> bool:
    html = f"""
      <h3>Hello {name},</h3>
      <p>We received a request to reset your password.</p>
      <p><a href="{reset_url}">Reset your password</a></p>
      <p>This link expires in {config.PASSWORD_RESET_EXPIRES_MINUTES} minutes. If you did not ask for it, ignore this email.</p>
      <br>
      <p>Thanks,<br/>Doctor Booking Team</p>
    """
    return send_mail(to=email, subject='Password Reset Request', html=html)
