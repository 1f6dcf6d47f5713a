from auditor.matching import (
    ScorerEntry,
    TopicRef,
    entries_from_response,
    match_block_only,
    match_normalized,
    match_substring,
    reconcile,
)


def entry(i, block, topic):
    return ScorerEntry(index=i, block=block, topic=topic, raw={"score": 1})


def test_accent_and_case_differences_use_normalized_match():
    ref = TopicRef("2.1", "Front", "Codificación correcta del caso")
    rec = reconcile([ref], [entry(0, "FRONT", "codificacion  correcta del caso")])
    hit, strategy = rec.matches["2.1"]
    assert strategy == "normalized"
    assert hit.index == 0
    assert not rec.unmatched


def test_exact_match_wins_first():
    ref = TopicRef("1.1", "Falcon", "Cierre correcto del caso")
    rec = reconcile([ref], [entry(0, "Falcon", "Cierre correcto del caso")])
    assert rec.matches["1.1"][1] == "exact"


def test_topic_only_when_block_differs():
    ref = TopicRef("3.1", "Vcas", "Bloquea tarjeta")
    rec = reconcile([ref], [entry(0, "VCAS / Vision", "Bloquea tarjeta")])
    assert rec.matches["3.1"][1] == "topic"


def test_substring_either_direction():
    long_ref = TopicRef("1.2", "Falcon", "Creación y llenado correcto del caso: (creación correcto del caso)")
    short_ref = TopicRef("7.1", "Manejo", "Cumple")
    entries = [entry(0, "Otro", "creacion y llenado correcto del caso"),
               entry(1, "Otro", "cumple con el script completo")]
    rec = reconcile([long_ref, short_ref], entries)
    assert rec.matches["1.2"] == (entries[0], "substring")
    assert rec.matches["7.1"] == (entries[1], "substring")


def test_unrelated_label_is_unevaluated():
    ref = TopicRef("1.1", "Closure", "Correct case closure")
    rec = reconcile([ref], [entry(0, "Greeting", "Said hello")])
    assert rec.matches == {}
    assert [t.topic_id for t in rec.unmatched] == ["1.1"]
    assert rec.block_hints == set()
    assert len(rec.leftovers) == 1


def test_entries_are_consumed_once_and_exact_is_not_stolen():
    # Same label in two blocks; the loose match must not take the exact one's entry.
    front = TopicRef("2.7", "Front", "Califica correctamente la llamada")
    falcon = TopicRef("1.7", "Falcon", "Califica correctamente la llamada")
    entries = [entry(0, "Falcon", "califica correctamente la llamada"),
               entry(1, "Front", "Califica correctamente la llamada")]
    rec = reconcile([falcon, front], entries)
    assert rec.matches["2.7"] == (entries[1], "exact")
    assert rec.matches["1.7"] == (entries[0], "normalized")


def test_duplicate_labels_each_get_one_entry():
    a = TopicRef("3.1", "Vcas", "Calificación de transacciones")
    b = TopicRef("3.5", "Vcas", "Calificación de transacciones")
    entries = [entry(0, "Vcas", "Calificación de transacciones")]
    rec = reconcile([a, b], entries)
    assert rec.matches["3.1"][0].index == 0
    assert "3.5" not in rec.matches
    assert [t.topic_id for t in rec.unmatched] == ["3.5"]


def test_block_only_when_unambiguous():
    ref = TopicRef("6.1", "B.I", "Crea el Folio Correctamente")
    rec = reconcile([ref], [entry(0, "b.i", "Folio generado")])
    assert rec.matches["6.1"][1] == "block"


def test_block_only_ambiguous_leaves_block_hint():
    refs = [TopicRef("7.1", "Manejo de llamada", "Cumple con el script"),
            TopicRef("7.2", "Manejo de llamada", "Autentica correctamente")]
    rec = reconcile(refs, [entry(0, "Manejo de llamada", "Tono amable")])
    assert rec.matches == {}
    assert rec.block_hints == {"7.1", "7.2"}


def test_matchers_are_independent_functions():
    ref = TopicRef("1.1", "Falcon", "Bloqueo correcto")
    entries = [entry(0, "falcon", "BLOQUEO CORRECTO")]
    assert match_normalized(ref, entries, [ref]) is entries[0]
    assert match_substring(ref, [entry(1, "x", "bloqueo")], [ref]).index == 1
    assert match_block_only(ref, [entry(2, "Falcon", "x"), entry(3, "Falcon", "y")], [ref]) is None


def test_entries_from_response_skips_garbage():
    entries = entries_from_response([{"block": "A", "topic": "B"}, "nonsense", {"topic": "C"}])
    assert [(e.index, e.block, e.topic) for e in entries] == [(0, "A", "B"), (2, "", "C")]
    assert entries_from_response(None) == []
