from rankwatch.catalog import load_catalog
from rankwatch.catalog.models import Brand
from rankwatch.catalog.store import CatalogStore


def test_load_catalog_from_yaml():
    seeds = load_catalog()
    codes = [seed.brand.code for seed in seeds]
    assert codes == ["TOKOKU", "KOPIRAYA"]
    assert seeds[0].brand.query_text == "tokoku official"
    assert "shop.tokoku.co.id" in seeds[0].domains
    assert len(load_catalog(limit=1)) == 1


def test_load_catalog_skips_blank_domains(tmp_path):
    path = tmp_path / "brands.yml"
    path.write_text("- code: ACME\n  name: Acme\n  domains:\n    - acme.com\n    - ''\n")
    (seed,) = load_catalog(path)
    assert seed.brand.query_text == "Acme"
    assert seed.domains == ["acme.com"]


def test_upsert_brand_is_keyed_by_code(engine):
    catalog = CatalogStore(engine)
    first = catalog.upsert_brand(Brand(id=None, code="ACME", name="Acme"))
    second = catalog.upsert_brand(Brand(id=None, code="ACME", name="Acme Corp", is_active=False))
    assert first == second
    (brand,) = catalog.list_brands()
    assert brand.name == "Acme Corp"
    assert catalog.list_brands(active_only=True) == []


def test_add_domain_dedupes_by_host_key(engine):
    catalog = CatalogStore(engine)
    brand_id = catalog.upsert_brand(Brand(id=None, code="ACME", name="Acme"))
    first = catalog.add_domain(brand_id, "ACME", "acme.com")
    again = catalog.add_domain(brand_id, "ACME", "https://www.ACME.com/shop")
    assert first == again
    assert catalog.add_domain(brand_id, "ACME", "!!!") is None

    (domain,) = catalog.list_tracked_domains()
    assert domain.host_key == "acme.com"
    assert domain.root_key == "acme.com"
    assert domain.tokens == {"acme"}
    assert domain.brand_code == "ACME"
