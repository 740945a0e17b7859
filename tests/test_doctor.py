from datetime import datetime

from lifeledger.config import load_settings
from lifeledger.db import make_engine, ensure_schema
from lifeledger.doctor import run_checks
from lifeledger.models import Person


def test_doctor_basic(run_async):
    res = run_async(run_checks())
    assert 'config.data_dir' in res.details
    assert 'db.tables' in res.details
    assert 'raw_entries' in res.details['db.tables']
    assert res.details['sweep.pending']['total_removed'] == 0
    assert res.details['jobs.latest']['weekly_report'] is None
    assert res.ok and res.errors == []


def test_doctor_reports_pending_duplicates(run_async):
    s = load_settings()
    eng, sf = make_engine(s.db_path)
    at = datetime(2026, 10, 1)

    async def go():
        await ensure_schema(eng)
        async with sf() as session:
            for i, name in enumerate(["Sam", "sam"]):
                session.add(Person(
                    id=f"p{i}", name=name, canonical_name="sam", mention_count=1,
                    first_mentioned=at, last_mentioned=at,
                ))
            await session.commit()
        await eng.dispose()
        return await run_checks()

    res = run_async(go())
    assert res.details['sweep.pending']['people_removed'] == 1
    assert any("pending" in w for w in res.warnings)
    # the dry run inside doctor leaves the store as it was
    assert run_async(run_checks()).details['sweep.pending']['people_removed'] == 1
