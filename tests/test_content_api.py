from conftest import register


def test_list_domains_anonymous(client):
    r = client.get("/api/domains")
    assert r.status_code == 200
    domains = r.json()["data"]
    assert [d["examPercentage"] for d in domains] == [24, 21, 25, 16, 14]
    assert all(d["progress"] == 0 for d in domains)


def test_domains_include_user_progress(client, user):
    client.put(f"/api/users/{user['id']}/progress/3", headers=user["headers"], json={"progress": 60})
    domains = client.get("/api/domains", headers=user["headers"]).json()["data"]
    assert {d["id"]: d["progress"] for d in domains}[3] == 60


def test_get_domain_with_scenarios(client):
    r = client.get("/api/domains/4")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["name"] == "Operations and Incident Response"
    assert [s["title"] for s in data["scenarios"]] == ["Incident Response Planning"]
    assert data["scenarios"][0]["completed"] is False

    assert client.get("/api/domains/42").status_code == 404


def test_list_scenarios_filtered(client):
    all_scenarios = client.get("/api/scenarios").json()["data"]
    assert len(all_scenarios) == 3
    assert all_scenarios[0]["domainName"] == "Threats, Attacks and Vulnerabilities"
    assert all_scenarios[0]["content"]["codeExample"] == "nmap -sV -sC target_network"

    lab = client.get("/api/scenarios", params={"domainId": 3}).json()["data"]
    assert [s["title"] for s in lab] == ["Cryptography Implementation"]


def test_invalid_optional_token_is_ignored(client):
    r = client.get("/api/scenarios/1", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 200
    assert r.json()["data"]["attempts"] == 0


def test_get_scenario_with_progress(client, user):
    client.put(f"/api/users/{user['id']}/scenarios/1", headers=user["headers"],
               json={"completed": True, "score": 80, "attempts": 2})
    data = client.get("/api/scenarios/1", headers=user["headers"]).json()["data"]
    assert data["completed"] is True
    assert data["score"] == 80
    assert data["attempts"] == 2

    assert client.get("/api/scenarios/77").status_code == 404


def test_achievements_earned_flag(client, user):
    anon = client.get("/api/achievements").json()["data"]
    assert anon and not any(a["earned"] for a in anon)

    client.put(f"/api/users/{user['id']}/scenarios/1", headers=user["headers"], json={"completed": True})
    mine = client.get("/api/achievements", headers=user["headers"]).json()["data"]
    first_steps = next(a for a in mine if a["name"] == "First Steps")
    assert first_steps["earned"] is True
    assert first_steps["earnedAt"] is not None
    assert first_steps["criteria"] == {"scenariosCompleted": 1}


def test_submit_passing_answers(client, user):
    r = client.post("/api/scenarios/2/submit", headers=user["headers"],
                    json={"answers": {"1": 1, "2": 2}, "timeSpent": 20})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["score"] == 100
    assert data["passed"] is True
    assert data["xpEarned"] == 200
    assert data["userScenario"]["attempts"] == 1
    assert all(res["correct"] for res in data["results"])
    assert "Incident Commander" in {a["name"] for a in data["newAchievements"]}

    progress = client.get(f"/api/users/{user['id']}/progress", headers=user["headers"]).json()["data"]
    assert progress == [{
        "domainId": 4, "progress": 100, "questionsCompleted": 2, "questionsCorrect": 2, "timeSpent": 20,
    }]


def test_submit_failing_answers(client, user):
    r = client.post("/api/scenarios/1/submit", headers=user["headers"], json={"answers": {"1": 0}})
    data = r.json()["data"]
    assert data["score"] == 0
    assert data["passed"] is False
    assert data["xpEarned"] == 0
    assert data["userScenario"]["completed"] is False
    assert data["results"][0]["explanation"]
    assert data["results"][1]["selected"] is None

    r = client.post("/api/scenarios/1/submit", headers=user["headers"], json={"answers": {"1": 1, "2": 2, "3": 1}})
    data = r.json()["data"]
    assert data["passed"] is True
    assert data["userScenario"]["attempts"] == 2


def test_submit_needs_auth_and_questions(client, user, admin):
    assert client.post("/api/scenarios/1/submit", json={"answers": {}}).status_code == 401

    created = client.post("/api/admin/scenarios", headers=admin["headers"], json={
        "title": "Tabletop", "description": "Discussion only", "type": "scenario", "domainId": 5,
        "difficulty": "beginner", "estimatedTime": 15, "xpReward": 20,
        "content": {"background": "Board meeting", "scenario": "Discuss risk appetite"},
    }).json()["data"]["scenario"]
    r = client.post(f"/api/scenarios/{created['id']}/submit", headers=user["headers"], json={"answers": {}})
    assert r.status_code == 400
    assert r.json()["message"] == "Scenario has no questions to grade"


def test_leaderboard(client, user):
    bob = register(client, email="bob@cyberlab.io", first_name="Bob", last_name="Jones")
    client.put(f"/api/users/{bob['id']}/scenarios/3", headers=bob["headers"], json={"completed": True})

    board = client.get("/api/leaderboard").json()["data"]
    assert [(e["rank"], e["firstName"], e["xp"]) for e in board] == [(1, "Bob", 250), (2, "Alice", 0)]

    board = client.get("/api/leaderboard", params={"limit": 1}).json()["data"]
    assert len(board) == 1
