from datetime import timedelta

import pytest

from errors import NotFoundError, ValidationError
from models import Contact, User, Vehicle, VehicleDocument, VehicleImage, utcnow


def make_vehicle(**kw):
    data = {"brand": "Peugeot", "model": "208", "year": 2021, "price": 6500000,
            "category": "Achat", "created_by": "64b000000000000000000001"}
    data.update(kw)
    return Vehicle(**data)


def image(n):
    return VehicleImage(url=f"https://media.test/{n}", media_id=f"autoparc/vehicles/{n}")


def primaries(vehicle):
    return [img for img in vehicle.images if img.is_primary]


def make_contact(**kw):
    data = {"name": "Awa Diallo", "email": "Awa@Example.com", "subject": "Disponibilité",
            "message": "Le véhicule est-il toujours disponible ?"}
    data.update(kw)
    return Contact(**data)


class TestVehicleImages:
    def test_first_image_becomes_primary(self):
        v = make_vehicle()
        v.add_images([image(1), image(2)])
        assert primaries(v) == [v.images[0]]
        assert v.primary_image_url() == "https://media.test/1"

    def test_adding_images_keeps_existing_primary(self):
        v = make_vehicle()
        v.add_images([image(1)])
        v.add_images([image(2), image(3)])
        assert len(primaries(v)) == 1
        assert v.images[0].is_primary

    def test_set_primary_moves_flag(self):
        v = make_vehicle()
        v.add_images([image(1), image(2), image(3)])
        v.set_primary_image(v.images[2].id)
        assert primaries(v) == [v.images[2]]

    def test_set_primary_unknown_id_leaves_flags(self):
        v = make_vehicle()
        v.add_images([image(1), image(2)])
        with pytest.raises(NotFoundError):
            v.set_primary_image("64b0000000000000000000ff")
        assert primaries(v) == [v.images[0]]

    def test_removing_primary_promotes_first_remaining(self):
        v = make_vehicle()
        v.add_images([image(1), image(2), image(3)])
        v.set_primary_image(v.images[1].id)
        v.remove_image(v.images[1].id)
        assert [img.url for img in v.images] == ["https://media.test/1", "https://media.test/3"]
        assert primaries(v) == [v.images[0]]

    def test_removing_last_image(self):
        v = make_vehicle()
        v.add_images([image(1)])
        v.remove_image(v.images[0].id)
        assert v.images == []
        assert v.primary_image_url() is None


class TestVehicle:
    def test_derived_attributes(self):
        v = make_vehicle(price=8500000, price_eur=12950.5)
        data = v.to_public()
        assert data["fullName"] == "Peugeot 208"
        assert data["formattedPriceFCFA"] == "8\u202f500\u202f000 FCFA"
        assert data["formattedPriceEUR"] == "12\u202f950,50 €"
        assert data["isAvailable"] is True
        assert data["age"] == utcnow().year - 2021

    def test_missing_eur_price(self):
        assert make_vehicle().formatted_price_eur() == "Non disponible"

    def test_maintenance_updates_last_service(self):
        from models import MaintenanceService

        v = make_vehicle()
        when = utcnow() - timedelta(days=3)
        v.add_maintenance_service(MaintenanceService(date=when, type="Vidange"))
        assert v.maintenance.last_service == when
        assert len(v.maintenance.service_history) == 1

    def test_needs_service_within_window(self):
        v = make_vehicle()
        assert not v.needs_service()
        v.maintenance.next_service = utcnow() + timedelta(days=10)
        assert v.needs_service()
        v.maintenance.next_service = utcnow() + timedelta(days=90)
        assert not v.needs_service()

    def test_document_filters(self):
        now = utcnow()
        v = make_vehicle()
        expired = VehicleDocument(name="Assurance 2023", type="Assurance", url="u1", media_id="m1",
                                  expiry_date=now - timedelta(days=1))
        soon = VehicleDocument(name="CT", type="Contrôle technique", url="u2", media_id="m2",
                               expiry_date=now + timedelta(days=20))
        later = VehicleDocument(name="Carte grise", type="Carte grise", url="u3", media_id="m3",
                                expiry_date=now + timedelta(days=200))
        for doc in (expired, soon, later):
            v.add_document(doc)
        assert v.expired_documents(now) == [expired]
        assert v.documents_expiring_within(as_of=now) == [soon]

    def test_history_records_actor(self):
        v = make_vehicle()
        entry = v.append_history("Changement de statut", "64b000000000000000000002", "Disponible -> Vendu")
        assert v.history == [entry]
        assert entry.actor_user_id == "64b000000000000000000002"

    def test_check_reports_every_field(self):
        v = make_vehicle()
        v.price = -1
        v.brand = ""
        with pytest.raises(ValidationError) as exc:
            v.check()
        fields = {e["field"] for e in exc.value.errors}
        assert {"price", "brand"} <= fields


class TestContact:
    def test_email_is_lowercased(self):
        assert make_contact().email == "awa@example.com"

    def test_first_public_response_moves_to_en_cours(self):
        c = make_contact()
        c.add_response("Oui, il est disponible.", "64b000000000000000000003")
        assert c.status == "En cours"
        c.set_status("Répondu")
        c.add_response("Nous vous attendons.", "64b000000000000000000003")
        assert c.status == "Répondu"

    def test_internal_response_keeps_status(self):
        c = make_contact()
        c.add_response("À rappeler demain", "64b000000000000000000003", is_internal=True)
        assert c.status == "Nouveau"

    def test_mark_read_keeps_first_reader(self):
        c = make_contact()
        assert c.mark_read("first") is True
        assert c.mark_read("second") is False
        assert c.read_by == "first"

    def test_tags_have_set_semantics(self):
        c = make_contact()
        c.add_tags(["urgent", "urgent", " vip "])
        assert c.tags == ["urgent", "vip"]
        c.remove_tags(["urgent", "absent"])
        assert c.tags == ["vip"]

    def test_follow_up_overdue(self):
        c = make_contact()
        assert not c.is_follow_up_overdue()
        c.schedule_follow_up(utcnow() - timedelta(hours=1))
        assert c.is_follow_up_overdue()

    def test_time_since_creation(self):
        c = make_contact(created_at=utcnow() - timedelta(days=2, hours=3))
        assert c.time_since_creation().startswith("2 jour(s) et 3 heure(s)")


class TestUser:
    def test_public_profile_hides_secrets(self):
        user = User(name="Jo Dupont", email="jo@x.fr", password="hash",
                    password_reset_token="abc", password_reset_expires=utcnow())
        profile = user.public_profile()
        for key in ("password", "passwordResetToken", "passwordResetExpires"):
            assert key not in profile
        assert profile["email"] == "jo@x.fr"

    def test_reset_token_validity(self):
        user = User(name="Jo Dupont", email="jo@x.fr", password="hash")
        user.start_password_reset("h", utcnow() + timedelta(minutes=10))
        assert user.reset_token_valid("h")
        assert not user.reset_token_valid("other")
        assert not user.reset_token_valid("h", now=utcnow() + timedelta(minutes=11))
        user.change_password("new-hash")
        assert user.password_reset_token is None
