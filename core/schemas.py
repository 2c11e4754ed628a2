from marshmallow import Schema, fields, post_load, validate, validates, validates_schema, ValidationError, EXCLUDE

from keywords_loader import normalize_location
from models import PREFERENCE_FLAGS


class IngestSchema(Schema):
    """Post payload handed over by the HTTP/connector layer."""
    text = fields.String(required=True)
    author = fields.String(allow_none=True, load_default=None)
    source = fields.String(required=True, validate=validate.Length(min=1, max=100))
    timestamp = fields.DateTime(allow_none=True, load_default=None)
    location = fields.String(allow_none=True, load_default=None)
    images = fields.List(fields.URL(), load_default=list)

    class Meta:
        unknown = EXCLUDE  # connector metadata we do not store

    @validates("text")
    def validate_text(self, value, **kwargs):
        # Oversized text is truncated downstream, only blank text is invalid
        if not value or not value.strip():
            raise ValidationError("Text must not be empty.")


class SubscriberSchema(Schema):
    id = fields.String(required=True)
    type = fields.String(load_default="email", validate=validate.OneOf(["email", "sms", "both"]))
    email = fields.Email(allow_none=True, load_default=None)
    phone = fields.String(allow_none=True, load_default=None,
                          validate=validate.Regexp(r"^\+?[0-9]{8,15}$", error="Invalid phone number."))
    preferences = fields.Dict(keys=fields.String(validate=validate.OneOf(PREFERENCE_FLAGS)),
                              values=fields.Boolean(), load_default=dict)
    location = fields.String(allow_none=True, load_default=None)
    active = fields.Boolean(load_default=True)

    @validates_schema
    def validate_endpoints(self, data, **kwargs):
        sub_type = data.get("type", "email")
        if sub_type in ("email", "both") and not data.get("email"):
            raise ValidationError("Email address required for this subscriber type.", "email")
        if sub_type in ("sms", "both") and not data.get("phone"):
            raise ValidationError("Phone number required for this subscriber type.", "phone")

    @post_load
    def canonical_location(self, data, **kwargs):
        # Alerts and events carry canonical names, so subscribers must too
        data["location"] = normalize_location(data.get("location"))
        return data
