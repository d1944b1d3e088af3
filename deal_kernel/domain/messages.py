"""
Outbound email bodies.

Jinja-syntax HTML rendered through the injected DocumentRenderer, so the
same variable checks and filters apply as for documents.  Every variable a
body references must be supplied by the caller.
"""

PROPOSAL_EMAIL = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #1f2937;">
  <p>Dear {{ clientName }},</p>
  <p>Thank you for your interest in {{ companyName }}. Please find attached
     our proposal <strong>{{ proposalNumber }}</strong> for your review.</p>
  <p>This proposal is valid until <strong>{{ validUntilDate }}</strong>.</p>
  <p>
    <a href="{{ acceptUrl }}" style="background:#16a34a;color:#fff;padding:10px 18px;text-decoration:none;border-radius:4px;">Accept proposal</a>
    &nbsp;
    <a href="{{ declineUrl }}" style="background:#dc2626;color:#fff;padding:10px 18px;text-decoration:none;border-radius:4px;">Decline</a>
  </p>
  <p>If you have any questions, simply reply to this email.</p>
  <p>Best regards,<br>{{ companyName }} Sales Team</p>
</body>
</html>
"""

CONTRACT_EMAIL = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #1f2937;">
  <p>Dear {{ clientName }},</p>
  <p>Your service contract with {{ companyName }} is attached.</p>
  <p>Please review it, sign it, and upload the signed copy using the
     secure link below:</p>
  <p><a href="{{ signingUrl }}" style="background:#2563eb;color:#fff;padding:10px 18px;text-decoration:none;border-radius:4px;">Submit signed contract</a></p>
  <p>This link is personal to your contract; please do not forward it.</p>
  <p>Best regards,<br>{{ companyName }}</p>
</body>
</html>
"""
