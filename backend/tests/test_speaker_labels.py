import re

import pytest

from schemas.stages import IdentifiedSpeaker
from services.errors import EngineError
from services.speakers import SpeakerIdentifier, apply_speaker_labels

TAG = re.compile(r"\[Speaker:(\d+)\]")


class TestApplySpeakerLabels:
    @pytest.mark.parametrize(
        "transcript",
        [
            "[Speaker:0] Hola.\n[Speaker:1] Buenas.\n[Speaker:0] Empecemos.",
            "[Speaker:2] Solo uno habla aquí.",
            "[Speaker:0] a\n[Speaker:1] b\n[Speaker:2] c\n[Speaker:10] d\n[Speaker:1] e",
        ],
    )
    def test_no_covered_tag_remains(self, transcript):
        indices = sorted({int(n) for n in TAG.findall(transcript)})
        speakers = [IdentifiedSpeaker(speaker_index=i, name=f"P{i}", role="Member") for i in indices]

        result = apply_speaker_labels(transcript, speakers)

        assert TAG.findall(result) == []

    def test_label_format(self):
        speakers = [IdentifiedSpeaker(speaker_index=0, name="Ana", role="Chair")]

        assert apply_speaker_labels("[Speaker:0] Hola.", speakers) == "**Ana, Chair:** Hola."

    def test_missing_name_and_role_become_unknown(self):
        speakers = [IdentifiedSpeaker(speaker_index=3)]

        assert apply_speaker_labels("[Speaker:3] x", speakers) == "**Unknown, Unknown:** x"

    def test_uncovered_tags_are_left_alone(self):
        speakers = [IdentifiedSpeaker(speaker_index=0, name="Ana", role="Chair")]

        result = apply_speaker_labels("[Speaker:0] a [Speaker:1] b", speakers)

        assert TAG.findall(result) == ["1"]


class TestSpeakerIdentifier:
    def test_identify(self, llm):
        llm.responses.append({
            "summary": "Budget review.",
            "speakers": [
                {"speakerIndex": 0, "name": "Ana", "role": "Chair"},
                {"speakerIndex": 1, "name": "Luis", "role": "Treasurer"},
            ],
        })

        result = SpeakerIdentifier(llm).identify("[Speaker:0] Hola.\n[Speaker:1] Buenas.", "Board meeting")

        assert result.summary == "Budget review."
        assert result.diarized_transcript == "**Ana, Chair:** Hola.\n**Luis, Treasurer:** Buenas."
        assert [s.name for s in result.speakers] == ["Ana", "Luis"]
        assert "Board meeting" in llm.prompts[0]

    def test_missing_keys_is_engine_error(self, llm):
        llm.responses.append({"speakers": []})

        with pytest.raises(EngineError):
            SpeakerIdentifier(llm).identify("[Speaker:0] Hola.")

    def test_malformed_entries_is_engine_error(self, llm):
        llm.responses.append({"summary": "x", "speakers": [{"name": "Ana"}]})

        with pytest.raises(EngineError):
            SpeakerIdentifier(llm).identify("[Speaker:0] Hola.")
