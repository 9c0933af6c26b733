import itertools
import logging
from datetime import datetime

from clinic_view.models.records import Appointment, Examination, TreatmentPhase, TreatmentPlan
from clinic_view.models.views import LinkConfidence
from clinic_view.services.aggregation import next_appointment
from clinic_view.services.linker import (
    STAGE_CHAIN,
    STAGE_DIRECT,
    STAGE_REVERSE,
    STAGE_SINGLE_UNLINKED,
    STAGE_UNFILTERED_POOL,
    RecordLinker,
    phases_for_plans,
)

NOW = datetime(2030, 1, 1, 12, 0)


def appointment(id, patient_id, status="Scheduled", at=datetime(2030, 2, 1, 9, 0)):
    return Appointment(id=id, patient_id=patient_id, status=status, scheduled_at=at)


def test_examination_linked_through_appointment_chain():
    a1 = appointment("A1", "P", status="Done", at=datetime(2029, 12, 1, 9, 0))
    a2 = appointment("A2", "P", status="Scheduled", at=datetime(2030, 2, 1, 9, 0))
    e1 = Examination(id="E1", appointment_id="A1")
    linker = RecordLinker([a1, a2], [e1])

    result = linker.link_examinations("P")

    assert result.examination_ids == ["E1"]
    assert result.exact[0].stage == STAGE_CHAIN
    assert result.low_confidence == []
    assert next_appointment(linker.patient_appointments("P"), NOW).id == "A2"
    assert linker.uncovered_appointment_ids("P") == ["A2"]


def test_direct_patient_id_wins_over_conflicting_chain(caplog):
    linker = RecordLinker(
        [appointment("A1", "P1")],
        [Examination(id="E1", patient_id="P2", appointment_id="A1")],
    )
    with caplog.at_level(logging.WARNING):
        assert linker.resolve_examination(linker.examinations["E1"]) == ("P2", STAGE_DIRECT)
    assert "keeping the direct id" in caplog.text
    assert linker.link_examinations("P1").examination_ids == []
    assert linker.link_examinations("P2").examination_ids == ["E1"]


def test_direct_and_chain_matches_never_use_the_heuristic():
    appointments = [appointment("A1", "P1"), appointment("A2", "P2")]
    exams = [
        Examination(id="E1", patient_id="P1"),
        Examination(id="E2", appointment_id="A2"),
        Examination(id="E3"),
    ]
    linker = RecordLinker(appointments, exams)

    for exam, expected in zip(exams[:2], ["P1", "P2"]):
        assert linker.resolve_examination(exam)[0] == expected
    p1 = linker.link_examinations("P1")
    assert p1.examination_ids == ["E1"]
    assert p1.low_confidence == []


def test_reverse_lookup_adds_examinations_for_uncovered_appointments():
    appointments = [appointment("A1", "P"), appointment("A2", "P"), appointment("A3", "Q")]
    exams = [Examination(id="E1", appointment_id="A1")]
    linker = RecordLinker(appointments, exams)
    assert linker.uncovered_appointment_ids("P") == ["A2"]

    lookups = {
        "A2": Examination(id="E2"),
        # Not this patient's appointment
        "A3": Examination(id="E3"),
        # Already covered by E1
        "A1": Examination(id="E9"),
    }
    result = linker.link_examinations("P", reverse_lookups=lookups)

    linked = {item.examination.id: item for item in result.exact}
    assert set(linked) == {"E1", "E2"}
    assert linked["E2"].stage == STAGE_REVERSE
    assert linked["E2"].examination.appointment_id == "A2"
    assert linked["E2"].examination.patient_id == "P"


def test_failed_reverse_lookups_are_just_no_match():
    linker = RecordLinker([appointment("A1", "P")], [Examination(id="E1", patient_id="P")])
    result = linker.link_examinations("P", reverse_lookups={"A1": None})
    assert result.examination_ids == ["E1"]


def test_detail_overrides_summary_and_keeps_the_stage():
    linker = RecordLinker([appointment("A1", "P")], [Examination(id="E1", appointment_id="A1")])
    detail = Examination(id="E1", diagnosis="Caries", total_cost=500)
    result = linker.link_examinations("P", details={"E1": detail})

    linked = result.exact[0]
    assert linked.stage == STAGE_CHAIN
    assert linked.examination.diagnosis == "Caries"
    assert linked.examination.appointment_id == "A1"


def test_single_unlinkable_examination_is_a_low_confidence_match(caplog):
    appointments = [appointment("A1", "P"), appointment("A2", "Q")]
    exams = [Examination(id="E1", appointment_id="A2"), Examination(id="E9")]

    with caplog.at_level(logging.WARNING):
        result = RecordLinker(appointments, exams).link_examinations("P")

    assert result.exact == []
    assert [item.examination.id for item in result.low_confidence] == ["E9"]
    assert result.low_confidence[0].confidence is LinkConfidence.LOW
    assert result.low_confidence[0].stage == STAGE_SINGLE_UNLINKED
    assert "Low-confidence link" in caplog.text
    assert result.examinations() == []
    assert [e.id for e in result.examinations(include_low_confidence=True)] == ["E9"]


def test_unfiltered_pool_only_when_nothing_links_anywhere():
    exams = [Examination(id="E1"), Examination(id="E2")]
    result = RecordLinker([], exams).link_examinations("P")
    assert sorted(item.examination.id for item in result.low_confidence) == ["E1", "E2"]
    assert {item.stage for item in result.low_confidence} == {STAGE_UNFILTERED_POOL}

    # Another patient's match counts as an exclusion, so no pool
    exams.append(Examination(id="E3", patient_id="Q"))
    assert RecordLinker([], exams).link_examinations("P").low_confidence == []


def test_heuristic_can_be_switched_off():
    result = RecordLinker([appointment("A1", "P")], [Examination(id="E9")], heuristic=False).link_examinations("P")
    assert result.exact == []
    assert result.low_confidence == []


def test_linking_is_independent_of_arrival_order():
    appointments = [appointment("A1", "P"), appointment("A2", "P"), appointment("A3", "Q")]
    exams = [
        Examination(id="E1", appointment_id="A1", created_at=datetime(2029, 5, 1)),
        Examination(id="E2", patient_id="P", created_at=datetime(2029, 6, 1)),
        Examination(id="E3", appointment_id="A3"),
    ]
    results = set()
    for appointment_order in itertools.permutations(appointments):
        for exam_order in itertools.permutations(exams):
            result = RecordLinker(appointment_order, exam_order).link_examinations("P")
            results.add(tuple(result.examination_ids))
    assert results == {("E2", "E1")}


def test_plans_link_directly_or_through_their_examination():
    linker = RecordLinker(
        [appointment("A1", "P")],
        [Examination(id="E1", appointment_id="A1"), Examination(id="E5")],
        [
            TreatmentPlan(id="T1", patient_id="P"),
            TreatmentPlan(id="T2", examination_id="E1"),
            TreatmentPlan(id="T3", patient_id="Q"),
            TreatmentPlan(id="T4", examination_id="E5"),
        ],
    )
    assert sorted(p.id for p in linker.link_plans("P")) == ["T1", "T2"]
    # E5 was linked by a reverse lookup the linker itself cannot resolve
    assert sorted(p.id for p in linker.link_plans("P", ["E5"])) == ["T1", "T2", "T4"]
    assert linker.resolve_phase(TreatmentPhase(id="PH", plan_id="T2")) == "P"
    assert linker.resolve_phase(TreatmentPhase(id="PH", plan_id="missing")) is None


def test_phases_for_plans_fills_missing_plans_with_empty_lists():
    plans = [TreatmentPlan(id="T1"), TreatmentPlan(id="T2")]
    phases = {"T1": [TreatmentPhase(id="PH1", plan_id="T1")], "OTHER": [TreatmentPhase(id="X")]}
    assert {k: [p.id for p in v] for k, v in phases_for_plans(plans, phases).items()} == {"T1": ["PH1"], "T2": []}
