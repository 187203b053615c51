import json

from carebird.templates import MessageTemplates, build_welcome_link, load_templates


def test_welcome_link_encodes_phone_and_trims_slash():
    assert build_welcome_link("https://care.example/", "+1 555") == "https://care.example/?phone=%2B1%20555"


def test_love_reply_substitutes_link():
    t = MessageTemplates(loveReply="Join: {link}")
    assert t.love_reply("https://x/?phone=1") == "Join: https://x/?phone=1"


def test_from_mapping_keeps_defaults_for_missing_or_blank_keys():
    t = MessageTemplates.from_mapping({"stopReply": "Bye", "unsubReply": "  ", "extra": "ignored", "loveReply": 5})

    assert t.stopReply == "Bye"
    assert t.unsubReply == MessageTemplates().unsubReply
    assert t.loveReply == MessageTemplates().loveReply


def test_load_templates_reads_messages_section(store):
    store.content().create({"Name": "Header", "Section": "header", "JSON Data": json.dumps({"logoUrl": ""})})
    store.content().create(
        {"Name": "Messages", "Section": "messages", "JSON Data": json.dumps({"monthlyMessage": "Hello again"})}
    )

    assert load_templates(store).monthlyMessage == "Hello again"


def test_load_templates_falls_back_when_store_fails(monkeypatch, store):
    def boom():
        raise RuntimeError("airtable down")

    monkeypatch.setattr(store, "get_messages_section", boom)

    assert load_templates(store) == MessageTemplates()


def test_invalid_json_section_uses_defaults(store):
    store.content().create({"Name": "Messages", "Section": "messages", "JSON Data": "{broken"})

    assert load_templates(store) == MessageTemplates()
