"""
Field-level anonymization of customer records.

Names, the email local part, and address line1/line2/postcode are replaced by
generated values. City, state, country, identity, and creation timestamp are
copied verbatim.
"""

from anonsync.core.models import Address, Customer

from .generators import RandomValueGenerator, ValueGenerator

_default_generator = RandomValueGenerator()


def anonymize_email(email: str, generate: ValueGenerator = _default_generator) -> str:
    """
    Replace the local part of an email address, keeping its domain.

    The address is split at the first ``@``. A value without ``@`` has no
    domain to keep and is replaced entirely.

    Examples:
        >>> anonymize_email("ada@example.com")  # doctest: +SKIP
        'k3J9aQzP@example.com'
    """
    local_part, separator, domain = email.partition("@")
    if not separator:
        return generate(email)
    return f"{generate(local_part)}@{domain}"


def anonymize(customer: Customer, generate: ValueGenerator = _default_generator) -> Customer:
    """
    Derive the anonymized projection of a customer.

    Args:
        customer: Source customer record
        generate: Value generator applied to each identifying field

    Returns:
        New Customer with the same id and created_at
    """
    address = customer.address
    return Customer(
        id=customer.id,
        first_name=generate(customer.first_name),
        last_name=generate(customer.last_name),
        email=anonymize_email(customer.email, generate),
        address=Address(
            line1=generate(address.line1),
            line2=generate(address.line2),
            postcode=generate(address.postcode),
            city=address.city,
            state=address.state,
            country=address.country,
        ),
        created_at=customer.created_at,
    )
