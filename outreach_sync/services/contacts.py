"""
Workspace contacts and companies

Get-or-create keyed by (workspace, email) and (workspace, domain). Both use
INSERT ... ON CONFLICT DO NOTHING followed by a read, so concurrent callers
converge on the same row.
"""
from typing import Optional

from sqlalchemy.orm import Session

from outreach_sync.models.domain import Company, Contact
from outreach_sync.services.upsert import insert_if_missing
from outreach_sync.utils.helpers import email_domain


def get_or_create_company(db: Session, workspace_id: int, domain: str, source: str = "webhook") -> Company:
    domain = domain.lower()
    insert_if_missing(
        db,
        Company,
        {"workspace_id": workspace_id, "domain": domain, "name": domain, "source": source},
        ["workspace_id", "domain"],
    )
    return db.query(Company).filter(
        Company.workspace_id == workspace_id,
        Company.domain == domain,
    ).one()


def get_or_create_contact(
    db: Session,
    workspace_id: int,
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    source: str = "webhook",
) -> Contact:
    """
    Find the workspace contact for an email, creating it (and its company,
    from the email domain) on first sight.
    """
    email = email.strip().lower()
    if "@" not in email:
        raise ValueError(f"not an email address: {email!r}")

    contact = db.query(Contact).filter(
        Contact.workspace_id == workspace_id,
        Contact.email == email,
    ).first()
    if contact:
        return contact

    company_id = None
    domain = email_domain(email)
    if domain:
        company_id = get_or_create_company(db, workspace_id, domain, source=source).id

    insert_if_missing(
        db,
        Contact,
        {
            "workspace_id": workspace_id,
            "email": email,
            "company_id": company_id,
            "first_name": first_name,
            "last_name": last_name,
            "source": source,
        },
        ["workspace_id", "email"],
    )
    return db.query(Contact).filter(
        Contact.workspace_id == workspace_id,
        Contact.email == email,
    ).one()
