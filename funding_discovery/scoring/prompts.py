"""
Prompts for the AI half of fit scoring.
"""

from typing import Any, Dict, List, Optional


# Used when the opportunity is large or the rule-based picture is uncertain
DETAILED_SYSTEM_PROMPT = """You are an expert grant strategist with deep knowledge of federal, foundation, and private funding landscapes.

Analyze the opportunity-project-organization fit with sophisticated reasoning considering:
- Competitive dynamics and success probability
- Strategic value beyond financial return
- Implementation feasibility and risk factors
- Long-term organizational impact
- Compliance and administrative burden

Return JSON with:
{
  "strategic_score": 0-100,
  "reasoning": "detailed strategic analysis with specific insights",
  "competitive_risk": "low/medium/high",
  "success_probability": "low/medium/high",
  "strategic_value": "low/medium/high",
  "key_strengths": ["strength1", "strength2", "strength3"],
  "risk_factors": ["risk1", "risk2"],
  "recommendations": "specific advice for pursuit strategy"
}"""

BRIEF_SYSTEM_PROMPT = """You are a grant matching analyst. Provide focused strategic assessment.

Return JSON with:
{
  "strategic_score": 0-100,
  "reasoning": "concise strategic analysis",
  "competitive_risk": "low/medium/high",
  "success_probability": "medium/high"
}"""


def _join(values: Optional[List[Any]], default: str, sep: str = ", ") -> str:
    if not values:
        return default
    if isinstance(values, str):
        return values
    return sep.join(str(v) for v in values)


def _yes_no(value) -> str:
    return "Yes" if value else "No"


def _money(value, default: str = "Unknown") -> str:
    try:
        return f"${float(value):,.0f}"
    except (TypeError, ValueError):
        return default


def build_fit_prompt(opportunity: Dict[str, Any], project: Dict[str, Any],
                     profile: Dict[str, Any], pre_score) -> str:
    """User prompt carrying the full profile, project, opportunity and rule scores."""
    description = (opportunity.get("description") or "No description")[:500]

    return f"""
COMPREHENSIVE GRANT OPPORTUNITY ANALYSIS

ORGANIZATION PROFILE:
- Type: {profile.get('organization_type') or 'Unknown'}
- Years Operating: {profile.get('years_operating') or 'Unknown'}
- Annual Budget: {_money(profile.get('annual_budget'))}
- Staff: {profile.get('full_time_staff') or 0} FT, {profile.get('part_time_staff') or 0} PT, {profile.get('volunteers') or 0} volunteers
- Focus Areas: {_join(profile.get('primary_focus_areas'), 'Not specified')}
- Populations Served: {_join(profile.get('populations_served'), 'Not specified')}
- Previous Awards: {profile.get('previous_awards') or 'None specified'}
- Compliance Status:
  * EIN: {_yes_no(profile.get('ein'))}
  * DUNS/UEI: {_yes_no(profile.get('duns_uei'))}
  * SAM Registration: {profile.get('sam_registration') or 'Unknown'}
  * Audit Status: {profile.get('audit_status') or 'Unknown'}
  * Special Certifications: {_join(profile.get('special_certifications'), 'None')}

PROJECT DETAILS:
- Name: {project.get('name') or project.get('title') or 'Unnamed'}
- Category: {project.get('project_category') or 'Unknown'}
- Total Budget: {_money(project.get('total_project_budget'))}
- Funding Request: {_money(project.get('funding_request_amount'))}
- People Served: {project.get('estimated_people_served') or 'Unknown'}
- Duration: {project.get('project_duration') or 'Unknown'}
- Status: {project.get('current_status') or 'Unknown'}
- Geographic Scope: {project.get('project_location') or 'Unknown'}
- Primary Goals: {_join(project.get('primary_goals'), 'Not specified', '; ')}
- Outcomes: {project.get('outcome_measures') or 'Not specified'}
- Innovation: {project.get('unique_innovation') or 'Not specified'}
- Evidence Base: {project.get('evidence_base') or 'Not specified'}
- Sustainability Plan: {project.get('sustainability_plan') or 'Not specified'}
- Urgency Level: {project.get('urgency_level') or 'Unknown'}

OPPORTUNITY DETAILS:
- Title: {opportunity.get('title')}
- Type: {opportunity.get('type') or 'Unknown'}
- Amount Range: {_money(opportunity.get('amount_min'), '$0')} - {_money(opportunity.get('amount_max'), 'Unlimited')}
- Eligible Organizations: {_join(opportunity.get('organization_types'), 'All')}
- Focus Areas: {_join(opportunity.get('focus_areas'), 'General')}
- Description: {description}
- Deadline: {opportunity.get('deadline_date') or 'Rolling'}
- Source: {opportunity.get('source') or 'Unknown'}

RULE-BASED PRE-ANALYSIS:
- Compliance Score: {pre_score.compliance_score}/30
- Readiness Score: {pre_score.readiness_score}/25
- Strategic Fit: {pre_score.strategic_fit}/25
- Timing Score: {pre_score.timing_score}/20
- Pre-Score Total: {pre_score.quick_score}/100

ANALYSIS REQUIRED:
Please provide a comprehensive strategic assessment considering:
1. Competitive landscape and success probability
2. Resource requirements vs. organizational capacity
3. Strategic value beyond just funding amount
4. Risk factors and mitigation strategies
5. Alignment with long-term organizational goals
"""
